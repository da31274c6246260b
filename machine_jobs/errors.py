from __future__ import annotations


class JobError(Exception):
    code = "job_error"

    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def __str__(self) -> str:
        return self.message


class JobNotFoundError(JobError):
    code = "not_found"

    def __init__(self, job_id: str, message: str | None = None):
        super().__init__(message or f"Job {job_id} not found", job_id=job_id)


class ScheduleNotFoundError(JobNotFoundError):
    def __init__(self, schedule_id: str):
        super().__init__(schedule_id, f"Scheduled job {schedule_id} not found")
        self.schedule_id = schedule_id


class InvalidStateError(JobError):
    """Operation is not allowed for the job's current status."""

    code = "invalid_state"


class AlreadyActiveError(InvalidStateError):
    """Another job already holds the machine."""

    code = "already_active"


class PersistenceError(JobError):
    code = "persistence_error"


class DispatchError(JobError):
    """The streamer refused or failed to accept a line range."""

    code = "dispatch_error"
