from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from .errors import PersistenceError
from .models import Job, JobStatus, JobType, utcnow
from .persistence import job_from_dict, read_json, write_json

DEFAULT_HISTORY_SIZE = 1000


@dataclass
class JobAnalytics:
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    average_completion_seconds: float | None = None
    total_machine_seconds: float = 0.0
    most_used_material: str | None = None
    most_used_tool: str | None = None
    jobs_by_type: dict[str, int] = field(default_factory=dict)
    jobs_by_day: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize(jobs: Iterable[Job]) -> JobAnalytics:
    analytics = JobAnalytics()
    by_type: Counter[str] = Counter()
    by_day: Counter[str] = Counter()
    materials: Counter[str] = Counter()
    tools: Counter[str] = Counter()
    completion_times: list[float] = []

    for job in jobs:
        analytics.total_jobs += 1
        if job.status == JobStatus.COMPLETED:
            analytics.completed_jobs += 1
            if job.actual_duration is not None:
                completion_times.append(job.actual_duration)
        elif job.status == JobStatus.FAILED:
            analytics.failed_jobs += 1
        elif job.status == JobStatus.CANCELLED:
            analytics.cancelled_jobs += 1

        by_type[job.job_type.value] += 1
        if job.completed_at is not None:
            by_day[job.completed_at.strftime("%Y-%m-%d")] += 1
        if job.actual_duration is not None:
            analytics.total_machine_seconds += job.actual_duration
        if job.material:
            materials[job.material] += 1
        if job.tool:
            tools[job.tool] += 1

    if completion_times:
        analytics.average_completion_seconds = sum(completion_times) / len(completion_times)
    analytics.jobs_by_type = dict(by_type)
    analytics.jobs_by_day = dict(by_day)
    if materials:
        analytics.most_used_material = materials.most_common(1)[0][0]
    if tools:
        analytics.most_used_tool = tools.most_common(1)[0][0]
    return analytics


class JobHistory:
    """Finished jobs, newest last, capped at ``max_size`` entries."""

    def __init__(self, max_size: int = DEFAULT_HISTORY_SIZE, jobs: list[Job] | None = None):
        self.max_size = max(1, max_size)
        self.jobs: list[Job] = list(jobs or [])[-self.max_size :]

    def __len__(self) -> int:
        return len(self.jobs)

    def add_finished_job(self, job: Job) -> bool:
        if not job.is_finished():
            return False
        self.jobs.append(job.copy())
        if len(self.jobs) > self.max_size:
            del self.jobs[: len(self.jobs) - self.max_size]
        return True

    def analytics(self) -> JobAnalytics:
        return summarize(self.jobs)

    def recent_jobs(self, days: int, now: datetime | None = None) -> list[Job]:
        cutoff = (now or utcnow()) - timedelta(days=days)
        return [job for job in self.jobs if job.completed_at is not None and job.completed_at > cutoff]

    def jobs_by_type(self, job_type: JobType) -> list[Job]:
        return [job for job in self.jobs if job.job_type == job_type]

    def performance_summary(self, start: datetime, end: datetime) -> JobAnalytics:
        return summarize(
            job for job in self.jobs if job.completed_at is not None and start <= job.completed_at <= end
        )

    def clear(self) -> None:
        self.jobs.clear()

    def to_dict(self) -> dict[str, Any]:
        return {"max_size": self.max_size, "jobs": [job.to_dict() for job in self.jobs]}

    @classmethod
    def from_dict(cls, payload: Any, max_size: int | None = None) -> JobHistory:
        if not isinstance(payload, dict) or not isinstance(payload.get("jobs"), list):
            raise PersistenceError("History payload does not contain a job list")
        try:
            jobs = [job_from_dict(item) for item in payload["jobs"]]
            size = int(max_size if max_size is not None else payload.get("max_size", DEFAULT_HISTORY_SIZE))
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"History payload is invalid: {exc}") from exc
        return cls(max_size=size, jobs=jobs)

    def save_to_file(self, path: Path) -> None:
        write_json(path, self.to_dict())

    @classmethod
    def load_from_file(cls, path: Path, max_size: int | None = None) -> JobHistory:
        return cls.from_dict(read_json(path), max_size=max_size)
