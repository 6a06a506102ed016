import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

# Set by the orchestrator while it handles a heartbeat / touches a job
ctx_worker_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("worker_id", default=None)
ctx_job_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("job_id", default=None)

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "uvicorn.access", "alembic")


class CorrelationFilter(logging.Filter):
    """Copy the current worker/job correlation ids onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.worker_id = ctx_worker_id.get()
        record.job_id = ctx_job_id.get()
        return True


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        for name in ("worker_id", "job_id"):
            value = getattr(record, name, None)
            if value:
                log_record[name] = value
            else:
                log_record.pop(name, None)


def setup_logger(log_format: str = "text", log_level: str = "INFO") -> logging.Logger:
    """Configure the root logger for text or JSON output."""
    root_logger = logging.getLogger()

    # Replace handlers so repeated calls (tests, reloads) do not duplicate output
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter())
    if log_format.lower() == "json":
        handler.setFormatter(
            CorrelationJsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "asctime": "timestamp"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
