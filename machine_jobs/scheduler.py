"""Timed and recurring job templates.

A ``ScheduledJob`` never runs itself. When it is due and its dependencies are
met, ``JobManager.process_scheduled_jobs`` queues a fresh copy of its template
job under a new id.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping
from uuid import uuid4

from .errors import PersistenceError, ScheduleNotFoundError
from .models import Job, JobStatus, as_utc, utcnow
from .persistence import job_from_dict, optional_datetime, parse_datetime, read_json, write_json

DAYS_PER_MONTH = 30


class RepeatUnit(str, Enum):
    NONE = "none"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


@dataclass(frozen=True)
class RepeatInterval:
    unit: RepeatUnit = RepeatUnit.NONE
    every: int = 1

    def __post_init__(self) -> None:
        if self.unit != RepeatUnit.NONE and self.every < 1:
            raise ValueError("Repeat interval must be at least 1")

    @property
    def repeats(self) -> bool:
        return self.unit != RepeatUnit.NONE

    def delta(self) -> timedelta | None:
        if self.unit == RepeatUnit.NONE:
            return None
        if self.unit == RepeatUnit.MONTHS:
            # Months are approximated as 30 days.
            return timedelta(days=self.every * DAYS_PER_MONTH)
        return timedelta(**{self.unit.value: self.every})

    def to_dict(self) -> dict[str, Any]:
        return {"unit": self.unit.value, "every": self.every}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> RepeatInterval:
        if not payload:
            return cls()
        return cls(RepeatUnit(payload.get("unit", RepeatUnit.NONE.value)), int(payload.get("every", 1)))


@dataclass(frozen=True)
class JobDependency:
    job_id: str
    required_status: JobStatus = JobStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "required_status": self.required_status.value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> JobDependency:
        return cls(
            str(payload["job_id"]),
            JobStatus(payload.get("required_status", JobStatus.COMPLETED.value)),
        )


@dataclass
class ScheduledJob:
    job: Job
    start_time: datetime
    schedule_id: str = field(default_factory=lambda: str(uuid4()))
    repeat_interval: RepeatInterval = field(default_factory=RepeatInterval)
    dependencies: list[JobDependency] = field(default_factory=list)
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    max_runs: int | None = None
    run_count: int = 0

    def __post_init__(self) -> None:
        self.start_time = as_utc(self.start_time)
        if self.next_run is None and self.last_run is None:
            self.next_run = self.start_time

    def exhausted(self) -> bool:
        return self.max_runs is not None and self.run_count >= self.max_runs

    def should_run(self, now: datetime) -> bool:
        if not self.enabled or self.exhausted() or self.next_run is None:
            return False
        return as_utc(now) >= self.next_run

    def dependencies_satisfied(self, statuses: Mapping[str, JobStatus]) -> bool:
        return all(statuses.get(dep.job_id) == dep.required_status for dep in self.dependencies)

    def mark_executed(self, at: datetime) -> None:
        self.last_run = as_utc(at)
        self.run_count += 1
        delta = self.repeat_interval.delta()
        self.next_run = None if delta is None or self.exhausted() else self.last_run + delta

    def time_until_next_run(self, now: datetime) -> timedelta | None:
        if self.next_run is None or self.next_run <= as_utc(now):
            return None
        return self.next_run - as_utc(now)

    def instantiate(self, now: datetime) -> Job:
        """A pending copy of the template with its own id, ready to queue."""
        template = self.job
        job = Job.create(
            template.name,
            template.job_type,
            priority=template.priority,
            gcode_content=template.gcode_content,
            gcode_path=template.gcode_path,
            material=template.material,
            tool=template.tool,
            notes=template.notes,
            estimated_duration=template.estimated_duration,
        )
        job.created_at = as_utc(now)
        job.metadata = {**template.metadata, "schedule_id": self.schedule_id, "schedule_run": self.run_count + 1}
        return job

    def copy(self) -> ScheduledJob:
        return ScheduledJob.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "job": self.job.to_dict(),
            "start_time": self.start_time.isoformat(),
            "repeat_interval": self.repeat_interval.to_dict(),
            "dependencies": [dep.to_dict() for dep in self.dependencies],
            "enabled": self.enabled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "created_at": self.created_at.isoformat(),
            "max_runs": self.max_runs,
            "run_count": self.run_count,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ScheduledJob:
        return cls(
            job=job_from_dict(payload["job"]),
            start_time=parse_datetime(payload["start_time"]),
            schedule_id=str(payload["schedule_id"]),
            repeat_interval=RepeatInterval.from_dict(payload.get("repeat_interval")),
            dependencies=[JobDependency.from_dict(item) for item in payload.get("dependencies") or []],
            enabled=bool(payload.get("enabled", True)),
            last_run=optional_datetime(payload.get("last_run")),
            next_run=optional_datetime(payload.get("next_run")),
            created_at=parse_datetime(payload["created_at"]),
            max_runs=None if payload.get("max_runs") is None else int(payload["max_runs"]),
            run_count=int(payload.get("run_count", 0)),
        )


class JobScheduler:
    """Scheduled job templates in the order they were added."""

    def __init__(self, scheduled_jobs: Iterable[ScheduledJob] | None = None):
        self.scheduled_jobs: list[ScheduledJob] = list(scheduled_jobs or [])

    def __len__(self) -> int:
        return len(self.scheduled_jobs)

    def add(self, scheduled: ScheduledJob) -> ScheduledJob:
        self.scheduled_jobs.append(scheduled)
        return scheduled

    def get(self, schedule_id: str) -> ScheduledJob:
        for scheduled in self.scheduled_jobs:
            if scheduled.schedule_id == schedule_id:
                return scheduled
        raise ScheduleNotFoundError(schedule_id)

    def remove(self, schedule_id: str) -> ScheduledJob:
        scheduled = self.get(schedule_id)
        self.scheduled_jobs.remove(scheduled)
        return scheduled

    def set_enabled(self, schedule_id: str, enabled: bool) -> ScheduledJob:
        scheduled = self.get(schedule_id)
        scheduled.enabled = enabled
        return scheduled

    def enabled_schedules(self) -> list[ScheduledJob]:
        return [scheduled for scheduled in self.scheduled_jobs if scheduled.enabled]

    def due(self, now: datetime, statuses: Mapping[str, JobStatus]) -> list[ScheduledJob]:
        return [
            scheduled
            for scheduled in self.scheduled_jobs
            if scheduled.should_run(now) and scheduled.dependencies_satisfied(statuses)
        ]

    def next_run_time(self) -> datetime | None:
        runs = [scheduled.next_run for scheduled in self.enabled_schedules() if scheduled.next_run is not None]
        return min(runs, default=None)

    def upcoming(self, within: timedelta, now: datetime | None = None) -> list[ScheduledJob]:
        cutoff = as_utc(now or utcnow()) + within
        return [
            scheduled
            for scheduled in self.enabled_schedules()
            if scheduled.next_run is not None and scheduled.next_run <= cutoff
        ]

    def to_dict(self) -> dict[str, Any]:
        return {"scheduled_jobs": [scheduled.to_dict() for scheduled in self.scheduled_jobs]}

    @classmethod
    def from_dict(cls, payload: Any) -> JobScheduler:
        if not isinstance(payload, dict) or not isinstance(payload.get("scheduled_jobs"), list):
            raise PersistenceError("Schedule payload does not contain a scheduled job list")
        try:
            return cls(ScheduledJob.from_dict(item) for item in payload["scheduled_jobs"])
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Schedule payload is invalid: {exc}") from exc

    def save_to_file(self, path: Path) -> None:
        write_json(path, self.to_dict())

    @classmethod
    def load_from_file(cls, path: Path) -> JobScheduler:
        return cls.from_dict(read_json(path))
