from __future__ import annotations

from pathlib import Path

from .errors import AlreadyActiveError, InvalidStateError, JobNotFoundError
from .models import Job, JobStatus
from .persistence import load_jobs_from_file, save_jobs_to_file


class JobQueue:
    """Jobs in insertion order plus the ids currently dispatched to the machine.

    ``active_jobs`` lives only as long as the process: it is never saved and a
    loaded queue always starts with it empty. The machine runs one job at a
    time, so at most one id is ever active.
    """

    def __init__(self, jobs: list[Job] | None = None):
        self.jobs: list[Job] = []
        self.active_jobs: set[str] = set()
        for job in jobs or []:
            self._append(job)

    def __len__(self) -> int:
        return len(self.jobs)

    def __contains__(self, job_id: object) -> bool:
        return any(job.id == job_id for job in self.jobs)

    def _append(self, job: Job) -> None:
        if job.id in self:
            raise InvalidStateError(f"Job {job.id} is already queued", job_id=job.id)
        self.jobs.append(job)

    def add_job(self, job: Job) -> Job:
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(f"Only pending jobs can be queued (status={job.status.value})", job_id=job.id)
        self._append(job)
        return job

    def get_job(self, job_id: str) -> Job:
        for job in self.jobs:
            if job.id == job_id:
                return job
        raise JobNotFoundError(job_id)

    def find_job(self, job_id: str) -> Job | None:
        try:
            return self.get_job(job_id)
        except JobNotFoundError:
            return None

    def remove_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job_id in self.active_jobs:
            raise InvalidStateError(f"Job {job_id} is active and cannot be removed", job_id=job_id)
        self.jobs.remove(job)
        return job

    def get_next_pending_job(self) -> Job | None:
        # Highest priority first; equal priorities run in creation order.
        candidates = [(index, job) for index, job in enumerate(self.jobs) if job.status == JobStatus.PENDING]
        if not candidates:
            return None
        _, job = min(candidates, key=lambda item: (-item[1].priority, item[1].created_at, item[0]))
        return job

    def ensure_slot_free(self, job_id: str) -> None:
        others = self.active_jobs - {job_id}
        if others:
            busy = ", ".join(sorted(others))
            raise AlreadyActiveError(f"Machine is busy with job {busy}", job_id=job_id)

    def start_job(self, job_id: str, from_line: int | None = None) -> Job:
        job = self.get_job(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(f"Job {job_id} is not in pending state (status={job.status.value})", job_id=job_id)
        self.ensure_slot_free(job_id)
        job.start(from_line=from_line)
        self.active_jobs.add(job_id)
        return job

    def activate(self, job_id: str) -> None:
        job = self.get_job(job_id)
        if job.status != JobStatus.RUNNING:
            raise InvalidStateError(f"Job {job_id} is not running", job_id=job_id)
        self.ensure_slot_free(job_id)
        self.active_jobs.add(job_id)

    def release(self, job_id: str) -> bool:
        if job_id in self.active_jobs:
            self.active_jobs.discard(job_id)
            return True
        return False

    def jobs_with_status(self, status: JobStatus) -> list[Job]:
        return [job for job in self.jobs if job.status == status]

    def pending_jobs(self) -> list[Job]:
        return self.jobs_with_status(JobStatus.PENDING)

    def active_job_list(self) -> list[Job]:
        return [job for job in self.jobs if job.id in self.active_jobs]

    def clear_finished_jobs(self) -> list[Job]:
        finished = [job for job in self.jobs if job.is_finished()]
        self.jobs = [job for job in self.jobs if not job.is_finished()]
        return finished

    def reorder_jobs(self, job_ids: list[str]) -> None:
        if len(job_ids) != len(self.jobs) or set(job_ids) != {job.id for job in self.jobs}:
            raise InvalidStateError("Job id list must be a permutation of the queue")
        by_id = {job.id: job for job in self.jobs}
        self.jobs = [by_id[job_id] for job_id in job_ids]

    def save_to_file(self, path: Path) -> None:
        save_jobs_to_file(path, self.jobs)

    @classmethod
    def load_from_file(cls, path: Path) -> JobQueue:
        return cls(load_jobs_from_file(path))
