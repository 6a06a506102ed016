"""Standalone lease-sweep process.

Run next to the API when the sweep is not embedded (production PostgreSQL):

    # From backend/ directory:
    python -m jobfleet.sweeper_main

The process will:
1. Load jobfleet.config.settings (honours .env file)
2. Block until the tables exist (new Alembic deployments may have a brief gap)
3. Run the lease sweep every SWEEP_INTERVAL_SECONDS
4. Handle SIGINT/SIGTERM gracefully

Several sweeper processes may run at once: every change they make is a
conditional write, so a second sweeper only sees conflicts and no-ops.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from sqlalchemy import text

from jobfleet.composition import FleetServices, compose

logger = logging.getLogger("jobfleet.sweeper")


async def _wait_for_db(services: FleetServices, max_retries: int = 10, delay: float = 2.0) -> None:
    """Wait until the ``workers`` table is accessible."""
    for attempt in range(1, max_retries + 1):
        try:
            async with services.session_factory() as db:
                await db.execute(text("SELECT 1 FROM workers LIMIT 1"))
            logger.info("Database ready after %d attempt(s)", attempt)
            return
        except Exception as exc:
            logger.warning("Database not ready (attempt %d/%d): %s", attempt, max_retries, exc)
            if attempt < max_retries:
                await asyncio.sleep(delay)

    raise RuntimeError(
        f"Database not accessible after {max_retries} attempts. "
        "Run `alembic upgrade head` before starting the sweeper."
    )


async def main() -> None:
    from jobfleet.config import settings
    from jobfleet.utils.logger import setup_logger

    setup_logger(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)
    services = compose(settings)
    logger.info(
        "Starting JobFleet sweeper (dialect=%s, interval=%.1fs, lease=%.1fs)",
        settings.FLEET_DB_DIALECT,
        settings.SWEEP_INTERVAL_SECONDS,
        settings.LEASE_DURATION_SECONDS,
    )

    try:
        await _wait_for_db(services)

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _handle_stop(*_):
            logger.info("Received shutdown signal, stopping sweeper")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _handle_stop)
            except (NotImplementedError, AttributeError):
                # Windows doesn't support add_signal_handler
                pass

        services.sweeper.start()
        await stop_event.wait()
    finally:
        await services.dispose()

    logger.info("Sweeper stopped cleanly")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
