"""JSON snapshot codec for the job queue.

A snapshot is only ever trusted for what it can know after a restart: any job
recorded as running lost its machine connection with the previous process, so
it is brought back as pending. Which jobs were dispatched is never written.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from .errors import PersistenceError
from .models import DEFAULT_PRIORITY, Job, JobStatus, JobType, as_utc, utcnow

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def parse_datetime(raw: str) -> datetime:
    return as_utc(datetime.fromisoformat(raw))


def optional_datetime(raw: Any) -> datetime | None:
    if raw in (None, ""):
        return None
    return parse_datetime(str(raw))


def _optional_float(raw: Any) -> float | None:
    return None if raw is None else float(raw)


def _optional_int(raw: Any) -> int | None:
    return None if raw is None else int(raw)


def job_from_dict(payload: dict[str, Any]) -> Job:
    """Decode one job record. Raises ``KeyError``/``ValueError`` on malformed input."""
    return Job(
        id=str(payload["id"]),
        name=str(payload.get("name", "")),
        job_type=JobType(payload.get("job_type", JobType.GCODE_FILE.value)),
        created_at=parse_datetime(payload["created_at"]),
        status=JobStatus(payload.get("status", JobStatus.PENDING.value)),
        priority=int(payload.get("priority", DEFAULT_PRIORITY)),
        progress=float(payload.get("progress", 0.0)),
        last_completed_line=_optional_int(payload.get("last_completed_line")),
        started_at=optional_datetime(payload.get("started_at")),
        completed_at=optional_datetime(payload.get("completed_at")),
        actual_duration=_optional_float(payload.get("actual_duration")),
        estimated_duration=_optional_float(payload.get("estimated_duration")),
        gcode_path=payload.get("gcode_path"),
        gcode_content=str(payload.get("gcode_content") or ""),
        total_lines=int(payload.get("total_lines", 0)),
        lines_processed=int(payload.get("lines_processed", 0)),
        material=payload.get("material"),
        tool=payload.get("tool"),
        notes=str(payload.get("notes") or ""),
        error_message=payload.get("error_message"),
        can_resume=bool(payload.get("can_resume", True)),
        interrupted_at=optional_datetime(payload.get("interrupted_at")),
        retry_count=int(payload.get("retry_count", 0)),
        pause_count=int(payload.get("pause_count", 0)),
        resume_count=int(payload.get("resume_count", 0)),
        dispatch_count=int(payload.get("dispatch_count", 0)),
        metadata=payload.get("metadata") or {},
    )


def sanitize_restored_job(job: Job) -> bool:
    """Rewrite a job that claims to be running to pending. Returns True when changed."""
    if job.status != JobStatus.RUNNING:
        return False
    job.status = JobStatus.PENDING
    return True


def dump_jobs(jobs: Iterable[Job | dict[str, Any]]) -> dict[str, Any]:
    records = [item.to_dict() if isinstance(item, Job) else item for item in jobs]
    return {"version": SNAPSHOT_VERSION, "saved_at": utcnow().isoformat(), "jobs": records}


def load_jobs(payload: Any) -> list[Job]:
    if isinstance(payload, dict):
        records = payload.get("jobs")
    else:
        records = payload
    if not isinstance(records, list):
        raise PersistenceError("Snapshot does not contain a job list")

    jobs: list[Job] = []
    seen: set[str] = set()
    requeued = 0
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise PersistenceError(f"Snapshot record #{index} is not an object")
        try:
            job = job_from_dict(record)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Snapshot record #{index} is invalid: {exc}") from exc
        if job.id in seen:
            raise PersistenceError(f"Snapshot contains duplicate job id {job.id}")
        seen.add(job.id)
        if sanitize_restored_job(job):
            requeued += 1
        jobs.append(job)

    if requeued:
        logger.info("[persistence] requeued %d job(s) that were running before restart", requeued)
    return jobs


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Replace ``path`` atomically. Each call writes through its own temporary sibling."""
    path = Path(path)
    tmp_path: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as exc:
        if tmp_path is not None:
            Path(tmp_path).unlink(missing_ok=True)
        raise PersistenceError(f"Failed to write {path}: {exc}") from exc


def set_aside(path: Path) -> Path:
    """Rename an unreadable file so the next save cannot overwrite it."""
    path = Path(path)
    target = path.with_name(f"{path.name}.corrupt-{utcnow().strftime('%Y%m%dT%H%M%S%f')}")
    try:
        os.replace(path, target)
    except OSError as exc:
        raise PersistenceError(f"Failed to move unreadable {path} aside: {exc}") from exc
    logger.warning("[persistence] moved unreadable %s to %s", path, target.name)
    return target


def read_json(path: Path) -> Any:
    path = Path(path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PersistenceError(f"Snapshot {path} does not exist") from exc
    except (OSError, ValueError) as exc:
        raise PersistenceError(f"Failed to read {path}: {exc}") from exc


def save_jobs_to_file(path: Path, jobs: Iterable[Job | dict[str, Any]]) -> None:
    write_json(path, dump_jobs(jobs))


def load_jobs_from_file(path: Path) -> list[Job]:
    return load_jobs(read_json(path))
