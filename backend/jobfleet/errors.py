"""Exception taxonomy for the orchestration engine.

Revision conflicts and stale references are *not* exceptions: the record store
reports them through ``WriteResult`` / ``None`` and the engine handles them
locally.  Only the conditions below ever reach a caller.
"""

from __future__ import annotations


class JobFleetError(Exception):
    """Base class for all engine errors."""


class HeartbeatValidationError(JobFleetError, ValueError):
    """A heartbeat was malformed; nothing was written."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid heartbeat: " + "; ".join(problems))


class TransientStoreError(JobFleetError):
    """The store could not complete the operation right now; callers may retry."""


class StoreUnavailableError(TransientStoreError):
    """The record store could not be reached."""


class ConflictRetriesExhaustedError(TransientStoreError):
    """A read-modify-write kept losing revision races past the retry budget."""

    def __init__(self, what: str, attempts: int):
        self.what = what
        self.attempts = attempts
        super().__init__(f"Gave up updating {what} after {attempts} conflicting attempts")


class JobNotFoundError(JobFleetError, LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class WorkerNotFoundError(JobFleetError, LookupError):
    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Worker '{worker_id}' not found")


class InvalidJobStateError(JobFleetError):
    """The requested lifecycle transition is not allowed from the job's state."""

    def __init__(self, job_id: str, state: str, operation: str):
        self.job_id = job_id
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} job '{job_id}' in state '{state}'")


class DuplicateJobError(JobFleetError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' already exists")
