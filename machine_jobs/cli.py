from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .config import Settings
from .errors import JobError
from .history import JobHistory
from .job_manager import JobManager
from .models import DEFAULT_PRIORITY, Job, JobStatus, JobType


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(prog="machine-jobs", description="Machine job queue")
    parser.add_argument("--snapshot", type=Path, default=settings.snapshot_path, help="Queue snapshot file")
    parser.add_argument("--history", type=Path, default=settings.history_path, help="Job history file")
    parser.add_argument("--log-level", default="info")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)

    add = sub.add_parser("add", help="Queue a G-code program")
    add.add_argument("file", type=Path)
    add.add_argument("--name")
    add.add_argument("--type", dest="job_type", choices=[item.value for item in JobType], default=JobType.GCODE_FILE.value)
    add.add_argument("--priority", type=int, default=DEFAULT_PRIORITY)
    add.add_argument("--material")
    add.add_argument("--tool")
    add.add_argument("--notes", default="")

    listing = sub.add_parser("list", help="List queued jobs")
    listing.add_argument("--status", choices=[item.value for item in JobStatus])

    sub.add_parser("next", help="Show the job that would run next")

    show = sub.add_parser("show", help="Show one job")
    show.add_argument("job_id")

    remove = sub.add_parser("remove", help="Remove a job from the queue")
    remove.add_argument("job_id")

    reorder = sub.add_parser("reorder", help="Reorder the queue")
    reorder.add_argument("job_ids", nargs="+")

    sub.add_parser("clear-finished", help="Drop completed, failed and cancelled jobs")
    sub.add_parser("history", help="Print job history analytics")
    return parser.parse_args(argv)


def _format_job(job: Job) -> str:
    bookmark = "-" if job.last_completed_line is None else str(job.last_completed_line)
    return (
        f"{job.id}  {job.status.value:<9}  p={job.priority:<2}  "
        f"{job.progress * 100:5.1f}%  line={bookmark:<6}  {job.name}"
    )


def _open_manager(args: argparse.Namespace) -> JobManager:
    manager = JobManager()
    if args.snapshot.exists():
        manager.load_jobs(args.snapshot)
    return manager


def _serve(args: argparse.Namespace) -> int:
    # The app factory reads its settings from the environment.
    os.environ["MACHINE_JOBS_SNAPSHOT"] = str(args.snapshot)
    os.environ["MACHINE_JOBS_HISTORY"] = str(args.history)

    import uvicorn

    uvicorn.run(
        app="machine_jobs.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=False,
        log_level=args.log_level,
    )
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "history":
        history = JobHistory.load_from_file(args.history) if args.history.exists() else JobHistory()
        print(json.dumps(history.analytics().to_dict(), indent=2))
        return 0

    manager = _open_manager(args)
    changed = False

    if args.command == "add":
        content = args.file.read_text(encoding="utf-8", errors="replace")
        job = manager.create_job(
            args.name or args.file.stem,
            JobType(args.job_type),
            priority=args.priority,
            gcode_content=content,
            gcode_path=args.file.name,
            material=args.material,
            tool=args.tool,
            notes=args.notes,
        )
        print(job.id)
        changed = True
    elif args.command == "list":
        status = JobStatus(args.status) if args.status else None
        for job in manager.list_jobs(status=status):
            print(_format_job(job))
    elif args.command == "next":
        job = manager.next_pending_job()
        if job is None:
            print("no pending jobs", file=sys.stderr)
            return 1
        print(_format_job(job))
    elif args.command == "show":
        print(json.dumps(manager.get_job(args.job_id).summary(), indent=2))
    elif args.command == "remove":
        manager.remove_job(args.job_id)
        changed = True
    elif args.command == "reorder":
        manager.reorder_jobs(args.job_ids)
        changed = True
    elif args.command == "clear-finished":
        print(manager.clear_finished_jobs())
        changed = True

    if changed:
        manager.save_jobs(args.snapshot)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if args.command == "serve":
        return _serve(args)

    try:
        return _run(args)
    except (JobError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
