from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .errors import AlreadyActiveError, DispatchError, InvalidStateError
from .history import JobAnalytics, JobHistory
from .job_queue import JobQueue
from .models import Job, JobStatus, JobType, utcnow
from .persistence import load_jobs_from_file, save_jobs_to_file, write_json
from .scheduler import JobDependency, JobScheduler, RepeatInterval, ScheduledJob
from .streamer import Fault, LineCompleted, MachineStreamer, StreamerEvent

logger = logging.getLogger(__name__)


class JobManager:
    """Single point of mutation for the job queue.

    Requests from callers and events from the streamer both go through
    ``self._lock``; the manager is also the only code that changes which job
    holds the machine.
    """

    def __init__(
        self,
        queue: JobQueue | None = None,
        streamer: MachineStreamer | None = None,
        history: JobHistory | None = None,
        scheduler: JobScheduler | None = None,
    ):
        self._lock = threading.RLock()
        self._queue = queue if queue is not None else JobQueue()
        self._history = history if history is not None else JobHistory()
        self._scheduler = scheduler if scheduler is not None else JobScheduler()
        self._streamer = streamer

    def attach_streamer(self, streamer: MachineStreamer | None) -> None:
        with self._lock:
            self._streamer = streamer

    # Submission

    def add_job(self, job: Job) -> Job:
        with self._lock:
            self._queue.add_job(job)
            logger.info("[job-manager] queued job=%s name=%r priority=%d", job.id, job.name, job.priority)
            return job.copy()

    def create_job(self, name: str, job_type: JobType = JobType.GCODE_FILE, **fields: Any) -> Job:
        return self.add_job(Job.create(name, job_type, **fields))

    # Reads

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            return self._queue.get_job(job_id).copy()

    def list_jobs(self, status: JobStatus | None = None, limit: int | None = None) -> list[Job]:
        with self._lock:
            jobs = self._queue.jobs if status is None else self._queue.jobs_with_status(status)
            items = [job.copy() for job in jobs]
        if limit is not None:
            items = items[: max(1, limit)]
        return items

    def next_pending_job(self) -> Job | None:
        with self._lock:
            job = self._queue.get_next_pending_job()
            return job.copy() if job else None

    def current_job(self) -> Job | None:
        with self._lock:
            active = self._queue.active_job_list()
            return active[0].copy() if active else None

    def active_job_ids(self) -> set[str]:
        with self._lock:
            return set(self._queue.active_jobs)

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self._queue.jobs]

    # Execution

    def start_job(self, job_id: str, from_bookmark: bool = False) -> Job:
        with self._lock:
            job = self._queue.get_job(job_id)
            lines = job.program_lines()
            if not lines and job.status == JobStatus.PENDING:
                raise InvalidStateError(f"Job {job_id} has no program lines", job_id=job_id)
            start_line = 0
            bookmark = None
            if from_bookmark and job.last_completed_line is not None:
                start_line = bookmark = min(job.last_completed_line, len(lines) - 1)
            self._queue.start_job(job_id, from_line=bookmark)
            job.total_lines = len(lines)
            self._dispatch(job, start_line, lines)
            logger.info("[job-manager] started job=%s from line %d", job_id, start_line)
            return job.copy()

    def start_next_job(self) -> Job | None:
        with self._lock:
            job = self._queue.get_next_pending_job()
            if job is None:
                return None
            return self.start_job(job.id)

    def interrupt_job(self, job_id: str, line: int, reason: str | None = None) -> Job:
        with self._lock:
            job = self._queue.get_job(job_id)
            if reason is None:
                job.interrupt(line)
            else:
                job.interrupt(line, reason=reason)
            self._queue.release(job_id)
            logger.warning("[job-manager] interrupted job=%s at line %s", job_id, job.last_completed_line)
            return job.copy()

    def pause_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._queue.get_job(job_id)
            if job.status != JobStatus.RUNNING:
                raise InvalidStateError(f"Job {job_id} is not running (status={job.status.value})", job_id=job_id)
            self._stop_streaming(job_id)
            job.interrupt(max(job.lines_processed - 1, 0), reason="Paused by operator")
            job.pause_count += 1
            self._queue.release(job_id)
            logger.info("[job-manager] paused job=%s at line %s", job_id, job.last_completed_line)
            return job.copy()

    def resume_job(self, job_id: str) -> int:
        with self._lock:
            job = self._queue.get_job(job_id)
            if not job.can_resume_job():
                raise InvalidStateError(f"Job {job_id} cannot be resumed (status={job.status.value})", job_id=job_id)
            self._queue.ensure_slot_free(job_id)
            resume_line = job.resume()
            self._queue.activate(job_id)
            lines = job.program_lines()
            self._dispatch(job, resume_line, lines)
            logger.info("[job-manager] resumed job=%s from line %d", job_id, resume_line)
            return resume_line

    def cancel_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._queue.get_job(job_id)
            job.cancel()
            if self._queue.release(job_id):
                self._stop_streaming(job_id)
            self._history.add_finished_job(job)
            logger.info("[job-manager] cancelled job=%s", job_id)
            return job.copy()

    def complete_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._queue.get_job(job_id)
            job.complete()
            self._queue.release(job_id)
            self._history.add_finished_job(job)
            logger.info("[job-manager] completed job=%s in %.3fs", job_id, job.actual_duration or 0.0)
            return job.copy()

    def fail_job(self, job_id: str, error: str) -> Job:
        with self._lock:
            job = self._queue.get_job(job_id)
            job.fail(error)
            if self._queue.release(job_id):
                self._stop_streaming(job_id)
            self._history.add_finished_job(job)
            logger.error("[job-manager] failed job=%s: %s", job_id, error)
            return job.copy()

    def update_job_progress(self, job_id: str, progress: float) -> bool:
        with self._lock:
            return self._queue.get_job(job_id).update_progress(progress)

    def handle_event(self, event: StreamerEvent) -> None:
        with self._lock:
            job = self._queue.find_job(event.job_id)
            if job is None or job.status != JobStatus.RUNNING or event.job_id not in self._queue.active_jobs:
                logger.debug("[job-manager] ignoring %s for inactive job=%s", type(event).__name__, event.job_id)
                return
            if event.run != job.dispatch_count:
                logger.debug(
                    "[job-manager] ignoring %s from run %d for job=%s (current run %d)",
                    type(event).__name__,
                    event.run,
                    event.job_id,
                    job.dispatch_count,
                )
                return
            if isinstance(event, LineCompleted):
                self._on_line_completed(job, event.line_index)
            elif isinstance(event, Fault):
                self.interrupt_job(job.id, event.last_known_line, reason=event.reason)

    def _on_line_completed(self, job: Job, line_index: int) -> None:
        job.lines_processed = max(job.lines_processed, line_index + 1)
        if job.total_lines:
            job.update_progress(job.lines_processed / job.total_lines)
        if job.total_lines and job.lines_processed >= job.total_lines:
            self.complete_job(job.id)

    def _dispatch(self, job: Job, start_line: int, lines: list[str]) -> None:
        # Each dispatch opens a new run; events from older runs no longer match.
        job.dispatch_count += 1
        if self._streamer is None:
            return
        try:
            self._streamer.dispatch(job.id, start_line, lines[start_line:], run=job.dispatch_count)
        except Exception as exc:
            logger.exception("[job-manager] dispatch failed for job=%s", job.id)
            job.fail(f"Dispatch failed: {exc}")
            self._queue.release(job.id)
            self._history.add_finished_job(job)
            raise DispatchError(f"Failed to dispatch job {job.id}: {exc}", job_id=job.id) from exc

    def _stop_streaming(self, job_id: str) -> None:
        if self._streamer is not None:
            self._streamer.stop(job_id)

    # Queue administration

    def remove_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._queue.remove_job(job_id)
            logger.info("[job-manager] removed job=%s", job_id)
            return job

    def clear_finished_jobs(self) -> int:
        with self._lock:
            return len(self._queue.clear_finished_jobs())

    def reorder_jobs(self, job_ids: list[str]) -> None:
        with self._lock:
            self._queue.reorder_jobs(job_ids)

    # Persistence

    def save_jobs(self, path: Path) -> int:
        records = self.snapshot()
        save_jobs_to_file(path, records)
        logger.debug("[job-manager] saved %d job(s) to %s", len(records), path)
        return len(records)

    def load_jobs(self, path: Path) -> int:
        jobs = load_jobs_from_file(path)
        with self._lock:
            if self._queue.active_jobs:
                raise AlreadyActiveError("Cannot replace the queue while a job is active")
            self._queue = JobQueue(jobs)
        logger.info("[job-manager] restored %d job(s) from %s", len(jobs), path)
        return len(jobs)

    def analytics(self) -> JobAnalytics:
        with self._lock:
            return self._history.analytics()

    def history(self, limit: int | None = None) -> list[Job]:
        with self._lock:
            items = [job.copy() for job in reversed(self._history.jobs)]
        if limit is not None:
            items = items[: max(1, limit)]
        return items

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def export_history(self) -> dict[str, Any]:
        with self._lock:
            return self._history.to_dict()

    def import_history(self, payload: dict[str, Any]) -> int:
        history = JobHistory.from_dict(payload)
        with self._lock:
            self._history = history
            return len(history)

    def save_history(self, path: Path) -> None:
        write_json(path, self.export_history())

    def load_history(self, path: Path) -> int:
        with self._lock:
            max_size = self._history.max_size
        history = JobHistory.load_from_file(path, max_size=max_size)
        with self._lock:
            self._history = history
            return len(history)

    # Scheduling

    def schedule_job(
        self,
        job: Job,
        start_time: datetime,
        *,
        repeat_interval: RepeatInterval | None = None,
        dependencies: list[JobDependency] | None = None,
        max_runs: int | None = None,
    ) -> ScheduledJob:
        """Register ``job`` as a template; copies of it are queued from ``start_time`` on."""
        if max_runs is not None and max_runs < 1:
            raise InvalidStateError("max_runs must be at least 1")
        scheduled = ScheduledJob(
            job=job.copy(),
            start_time=start_time,
            repeat_interval=repeat_interval or RepeatInterval(),
            dependencies=list(dependencies or []),
            max_runs=max_runs,
        )
        with self._lock:
            self._scheduler.add(scheduled)
            logger.info(
                "[job-manager] scheduled %r schedule=%s first run %s repeat=%s",
                job.name,
                scheduled.schedule_id,
                scheduled.start_time.isoformat(),
                scheduled.repeat_interval.unit.value,
            )
            return scheduled.copy()

    def scheduled_jobs(self) -> list[ScheduledJob]:
        with self._lock:
            return [scheduled.copy() for scheduled in self._scheduler.scheduled_jobs]

    def get_scheduled_job(self, schedule_id: str) -> ScheduledJob:
        with self._lock:
            return self._scheduler.get(schedule_id).copy()

    def cancel_schedule(self, schedule_id: str) -> ScheduledJob:
        with self._lock:
            scheduled = self._scheduler.remove(schedule_id)
            logger.info("[job-manager] removed schedule=%s", schedule_id)
            return scheduled

    def set_schedule_enabled(self, schedule_id: str, enabled: bool) -> ScheduledJob:
        with self._lock:
            return self._scheduler.set_enabled(schedule_id, enabled).copy()

    def upcoming_scheduled_jobs(self, within: timedelta, now: datetime | None = None) -> list[ScheduledJob]:
        with self._lock:
            return [scheduled.copy() for scheduled in self._scheduler.upcoming(within, now=now)]

    def next_scheduled_run(self) -> datetime | None:
        with self._lock:
            return self._scheduler.next_run_time()

    def process_scheduled_jobs(self, now: datetime | None = None) -> list[Job]:
        """Queue a copy of every due schedule whose dependencies are met. Returns the queued jobs."""
        with self._lock:
            now = now or utcnow()
            statuses = {job.id: job.status for job in self._history.jobs}
            statuses.update((job.id, job.status) for job in self._queue.jobs)
            queued: list[Job] = []
            for scheduled in self._scheduler.due(now, statuses):
                job = self._queue.add_job(scheduled.instantiate(now))
                scheduled.mark_executed(now)
                queued.append(job.copy())
                logger.info(
                    "[job-manager] queued job=%s from schedule=%s (run %d)",
                    job.id,
                    scheduled.schedule_id,
                    scheduled.run_count,
                )
            return queued

    def save_scheduler(self, path: Path) -> None:
        with self._lock:
            payload = self._scheduler.to_dict()
        write_json(path, payload)

    def load_scheduler(self, path: Path) -> int:
        scheduler = JobScheduler.load_from_file(path)
        with self._lock:
            self._scheduler = scheduler
            return len(scheduler)
