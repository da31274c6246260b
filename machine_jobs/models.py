from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from .errors import InvalidStateError

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5

INTERRUPTED_MESSAGE = "Job interrupted due to communication error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class JobType(str, Enum):
    GCODE_FILE = "gcode_file"
    CAM_OPERATION = "cam_operation"
    PROBING = "probing"
    CALIBRATION = "calibration"
    MAINTENANCE = "maintenance"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})


def clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(int(priority), MAX_PRIORITY))


@dataclass
class Job:
    id: str
    name: str
    job_type: JobType
    created_at: datetime
    status: JobStatus = JobStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    progress: float = 0.0
    last_completed_line: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    actual_duration: float | None = None  # seconds
    estimated_duration: float | None = None  # seconds
    gcode_path: str | None = None
    gcode_content: str = ""
    total_lines: int = 0
    lines_processed: int = 0
    material: str | None = None
    tool: str | None = None
    notes: str = ""
    error_message: str | None = None
    can_resume: bool = True
    interrupted_at: datetime | None = None
    retry_count: int = 0
    pause_count: int = 0
    resume_count: int = 0
    dispatch_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        name: str,
        job_type: JobType = JobType.GCODE_FILE,
        *,
        priority: int = DEFAULT_PRIORITY,
        gcode_content: str = "",
        gcode_path: str | None = None,
        material: str | None = None,
        tool: str | None = None,
        notes: str = "",
        estimated_duration: float | None = None,
    ) -> Job:
        job = cls(
            id=str(uuid4()),
            name=name,
            job_type=JobType(job_type),
            created_at=utcnow(),
            priority=clamp_priority(priority),
            gcode_path=gcode_path,
            gcode_content=gcode_content,
            material=material,
            tool=tool,
            notes=notes,
            estimated_duration=estimated_duration,
        )
        job.total_lines = len(job.program_lines())
        return job

    def program_lines(self) -> list[str]:
        return self.gcode_content.splitlines()

    def is_active(self) -> bool:
        return self.status in (JobStatus.RUNNING, JobStatus.PAUSED)

    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def start(self, from_line: int | None = None) -> None:
        """Begin a new run. ``from_line`` seeds the bookmark when re-running from a saved position."""
        if self.status != JobStatus.PENDING:
            raise InvalidStateError(f"Job {self.id} is not pending (status={self.status.value})", job_id=self.id)
        self.status = JobStatus.RUNNING
        self.started_at = utcnow()
        self.completed_at = None
        self.actual_duration = None
        self.progress = 0.0
        self.lines_processed = 0
        self.last_completed_line = from_line
        self.error_message = None
        self.interrupted_at = None

    def interrupt(self, line: int, reason: str = INTERRUPTED_MESSAGE) -> None:
        """Pause the run with ``line`` as the resumption bookmark.

        The bookmark is monotonic: when the run already carries one (a run
        started from a saved position, or an earlier interrupt) a lower
        ``line`` is raised to it, so ``resume`` returns ``max(line, bookmark)``.
        Lines below the bookmark were already executed on the machine.
        """
        if self.status != JobStatus.RUNNING:
            raise InvalidStateError(f"Job {self.id} is not running (status={self.status.value})", job_id=self.id)
        if self.last_completed_line is not None:
            line = max(line, self.last_completed_line)
        self.status = JobStatus.PAUSED
        self.last_completed_line = line
        self.interrupted_at = utcnow()
        self.error_message = reason

    def can_resume_job(self) -> bool:
        return self.can_resume and self.status == JobStatus.PAUSED and self.last_completed_line is not None

    def resume_line(self) -> int | None:
        return self.last_completed_line if self.can_resume_job() else None

    def resume(self) -> int:
        if not self.can_resume_job():
            raise InvalidStateError(f"Job {self.id} cannot be resumed (status={self.status.value})", job_id=self.id)
        assert self.last_completed_line is not None
        self.status = JobStatus.RUNNING
        self.error_message = None
        self.interrupted_at = None
        self.resume_count += 1
        return self.last_completed_line

    def complete(self) -> None:
        if self.status != JobStatus.RUNNING:
            raise InvalidStateError(f"Job {self.id} is not running (status={self.status.value})", job_id=self.id)
        self.status = JobStatus.COMPLETED
        self.progress = 1.0
        self._finish()

    def fail(self, error: str) -> None:
        if not self.is_active():
            raise InvalidStateError(f"Job {self.id} is not active (status={self.status.value})", job_id=self.id)
        self.status = JobStatus.FAILED
        self.error_message = error
        self._finish()

    def cancel(self) -> None:
        if self.is_finished():
            raise InvalidStateError(f"Job {self.id} is already {self.status.value}", job_id=self.id)
        self.status = JobStatus.CANCELLED
        self._finish()

    def update_progress(self, value: float) -> bool:
        """Clamp into [0, 1] and apply while running. Returns False when the value is ignored."""
        if self.status != JobStatus.RUNNING:
            return False
        value = max(0.0, min(float(value), 1.0))
        if value < self.progress:
            return False
        self.progress = value
        return True

    def _finish(self) -> None:
        self.completed_at = utcnow()
        if self.started_at is not None:
            self.actual_duration = max((self.completed_at - self.started_at).total_seconds(), 0.0)

    def copy(self) -> Job:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "priority": self.priority,
            "progress": self.progress,
            "last_completed_line": self.last_completed_line,
            "created_at": self.created_at.isoformat(),
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "actual_duration": self.actual_duration,
            "estimated_duration": self.estimated_duration,
            "gcode_path": self.gcode_path,
            "gcode_content": self.gcode_content,
            "total_lines": self.total_lines,
            "lines_processed": self.lines_processed,
            "material": self.material,
            "tool": self.tool,
            "notes": self.notes,
            "error_message": self.error_message,
            "can_resume": self.can_resume,
            "interrupted_at": _isoformat(self.interrupted_at),
            "retry_count": self.retry_count,
            "pause_count": self.pause_count,
            "resume_count": self.resume_count,
            "dispatch_count": self.dispatch_count,
            "metadata": self.metadata,
        }

    def summary(self) -> dict[str, Any]:
        """``to_dict`` without the program text, for listings."""
        payload = self.to_dict()
        payload.pop("gcode_content")
        return payload
