from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings
from .context import ServiceContext
from .errors import AlreadyActiveError, DispatchError, InvalidStateError, JobError, JobNotFoundError, PersistenceError
from .models import DEFAULT_PRIORITY, Job, JobStatus, JobType
from .scheduler import JobDependency, RepeatInterval, RepeatUnit, ScheduledJob

GCODE_EXTENSIONS = {".nc", ".gcode", ".ngc", ".tap", ".txt"}

_STATUS_CODES: list[tuple[type[JobError], int]] = [
    (JobNotFoundError, 404),
    (AlreadyActiveError, 409),
    (InvalidStateError, 409),
    (DispatchError, 502),
    (PersistenceError, 500),
]


class JobCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    job_type: JobType = JobType.GCODE_FILE
    priority: int = DEFAULT_PRIORITY
    gcode_content: str = ""
    gcode_path: str | None = None
    material: str | None = None
    tool: str | None = None
    notes: str = ""
    estimated_duration: float | None = None


class ScheduleCreateRequest(JobCreateRequest):
    start_time: datetime
    repeat: RepeatUnit = RepeatUnit.NONE
    every: int = Field(default=1, ge=1)
    depends_on: list[str] = Field(default_factory=list)
    max_runs: int | None = Field(default=None, ge=1)


class ReorderRequest(BaseModel):
    job_ids: list[str]


def _schedule_summary(scheduled: ScheduledJob) -> dict:
    payload = scheduled.to_dict()
    payload["job"] = scheduled.job.summary()
    return payload


def _sanitize_filename(name: str) -> str:
    clean = name.strip().replace("\\", "_").replace("/", "_")
    clean = clean.replace("\n", "_").replace("\r", "_")
    return clean or "program.nc"


def _status_code(exc: JobError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


def create_app(context: ServiceContext | None = None) -> FastAPI:
    ctx = context or ServiceContext(Settings.from_env())
    manager = ctx.manager

    app = FastAPI(title="Machine Job Queue", version="1.0.0")
    app.state.context = ctx

    @app.exception_handler(JobError)
    async def job_error_handler(request: Request, exc: JobError) -> JSONResponse:
        return JSONResponse(status_code=_status_code(exc), content={"detail": str(exc), "code": exc.code})

    @app.on_event("startup")
    def on_startup() -> None:
        ctx.start()

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        ctx.close()

    @app.get("/health")
    def health() -> dict:
        current = manager.current_job()
        return {"status": "ok", "active_job": current.id if current else None}

    @app.get("/api/jobs")
    def list_jobs(status: JobStatus | None = None, limit: int = 100) -> JSONResponse:
        jobs = [item.summary() for item in manager.list_jobs(status=status, limit=limit)]
        return JSONResponse({"items": jobs})

    @app.post("/api/jobs", status_code=201)
    def create_job(body: JobCreateRequest) -> JSONResponse:
        job = manager.create_job(
            body.name,
            body.job_type,
            priority=body.priority,
            gcode_content=body.gcode_content,
            gcode_path=body.gcode_path,
            material=body.material,
            tool=body.tool,
            notes=body.notes,
            estimated_duration=body.estimated_duration,
        )
        return JSONResponse(job.summary(), status_code=201)

    @app.post("/api/jobs/upload", status_code=201)
    async def upload_job(
        file: UploadFile = File(...),
        priority: int = Form(DEFAULT_PRIORITY),
        material: str | None = Form(None),
        tool: str | None = Form(None),
    ) -> JSONResponse:
        if not file.filename:
            raise HTTPException(status_code=400, detail="Filename is missing")

        filename = _sanitize_filename(file.filename)
        if Path(filename).suffix.lower() not in GCODE_EXTENSIONS:
            raise HTTPException(status_code=400, detail="Only G-code files are supported")

        data = await file.read()
        if not data:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
        if len(data) > ctx.settings.upload_limit_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File is too large. Limit is {ctx.settings.max_upload_mb} MB",
            )

        job = manager.create_job(
            Path(filename).stem or filename,
            JobType.GCODE_FILE,
            priority=priority,
            gcode_content=data.decode("utf-8", errors="replace"),
            gcode_path=filename,
            material=material,
            tool=tool,
        )
        return JSONResponse(job.summary(), status_code=201)

    @app.get("/api/jobs/next")
    def next_job() -> JSONResponse:
        job = manager.next_pending_job()
        if job is None:
            raise HTTPException(status_code=404, detail="No pending jobs")
        return JSONResponse(job.summary())

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: str) -> JSONResponse:
        return JSONResponse(manager.get_job(job_id).to_dict())

    @app.delete("/api/jobs/{job_id}")
    def delete_job(job_id: str) -> JSONResponse:
        return JSONResponse(manager.remove_job(job_id).summary())

    @app.post("/api/jobs/{job_id}/start")
    def start_job(job_id: str, from_bookmark: bool = False) -> JSONResponse:
        return JSONResponse(manager.start_job(job_id, from_bookmark=from_bookmark).summary())

    @app.post("/api/jobs/{job_id}/pause")
    def pause_job(job_id: str) -> JSONResponse:
        return JSONResponse(manager.pause_job(job_id).summary())

    @app.post("/api/jobs/{job_id}/resume")
    def resume_job(job_id: str) -> JSONResponse:
        resume_line = manager.resume_job(job_id)
        return JSONResponse({"resume_line": resume_line, "job": manager.get_job(job_id).summary()})

    @app.post("/api/jobs/{job_id}/cancel")
    def cancel_job(job_id: str) -> JSONResponse:
        return JSONResponse(manager.cancel_job(job_id).summary())

    @app.post("/api/queue/start-next")
    def start_next() -> JSONResponse:
        job = manager.start_next_job()
        if job is None:
            raise HTTPException(status_code=404, detail="No pending jobs")
        return JSONResponse(job.summary())

    @app.post("/api/queue/reorder")
    def reorder(body: ReorderRequest) -> JSONResponse:
        manager.reorder_jobs(body.job_ids)
        return JSONResponse({"items": [item.summary() for item in manager.list_jobs()]})

    @app.post("/api/queue/clear-finished")
    def clear_finished() -> JSONResponse:
        return JSONResponse({"removed": manager.clear_finished_jobs()})

    @app.post("/api/queue/save")
    def save_queue() -> JSONResponse:
        saved = ctx.checkpoint()
        return JSONResponse({"saved": saved, "path": str(ctx.settings.snapshot_path)})

    @app.get("/api/schedules")
    def list_schedules() -> JSONResponse:
        next_run = manager.next_scheduled_run()
        return JSONResponse(
            {
                "items": [_schedule_summary(item) for item in manager.scheduled_jobs()],
                "next_run": next_run.isoformat() if next_run else None,
            }
        )

    @app.post("/api/schedules", status_code=201)
    def create_schedule(body: ScheduleCreateRequest) -> JSONResponse:
        template = Job.create(
            body.name,
            body.job_type,
            priority=body.priority,
            gcode_content=body.gcode_content,
            gcode_path=body.gcode_path,
            material=body.material,
            tool=body.tool,
            notes=body.notes,
            estimated_duration=body.estimated_duration,
        )
        scheduled = manager.schedule_job(
            template,
            body.start_time,
            repeat_interval=RepeatInterval(body.repeat, body.every),
            dependencies=[JobDependency(job_id) for job_id in body.depends_on],
            max_runs=body.max_runs,
        )
        return JSONResponse(_schedule_summary(scheduled), status_code=201)

    @app.get("/api/schedules/upcoming")
    def upcoming_schedules(minutes: int = 60) -> JSONResponse:
        items = manager.upcoming_scheduled_jobs(timedelta(minutes=max(0, minutes)))
        return JSONResponse({"items": [_schedule_summary(item) for item in items]})

    @app.post("/api/schedules/process")
    def process_schedules() -> JSONResponse:
        queued = manager.process_scheduled_jobs()
        return JSONResponse({"queued": [job.summary() for job in queued]})

    @app.get("/api/schedules/{schedule_id}")
    def get_schedule(schedule_id: str) -> JSONResponse:
        return JSONResponse(_schedule_summary(manager.get_scheduled_job(schedule_id)))

    @app.delete("/api/schedules/{schedule_id}")
    def delete_schedule(schedule_id: str) -> JSONResponse:
        return JSONResponse(_schedule_summary(manager.cancel_schedule(schedule_id)))

    @app.post("/api/schedules/{schedule_id}/enable")
    def enable_schedule(schedule_id: str) -> JSONResponse:
        return JSONResponse(_schedule_summary(manager.set_schedule_enabled(schedule_id, True)))

    @app.post("/api/schedules/{schedule_id}/disable")
    def disable_schedule(schedule_id: str) -> JSONResponse:
        return JSONResponse(_schedule_summary(manager.set_schedule_enabled(schedule_id, False)))

    @app.get("/api/history")
    def history(limit: int = 50) -> JSONResponse:
        return JSONResponse({"items": [item.summary() for item in manager.history(limit=limit)]})

    @app.delete("/api/history")
    def clear_history() -> JSONResponse:
        manager.clear_history()
        return JSONResponse({"status": "cleared"})

    @app.get("/api/history/analytics")
    def analytics() -> JSONResponse:
        return JSONResponse(manager.analytics().to_dict())

    return app
