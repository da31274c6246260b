"""Runtime configuration read from ``MACHINE_JOBS_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    value = int(raw) if raw else default
    return max(value, minimum)


@dataclass(slots=True)
class Settings:
    workspace_dir: Path = Path("workspace")
    snapshot_path: Path = Path("workspace/jobs.json")
    history_path: Path = Path("workspace/history.json")
    schedule_path: Path = Path("workspace/schedule.json")
    checkpoint_seconds: int = 30
    schedule_check_seconds: int = 60
    history_size: int = 1000
    line_delay_ms: int = 50
    max_upload_mb: int = 64
    host: str = "127.0.0.1"
    port: int = 8765

    @property
    def line_delay(self) -> float:
        return self.line_delay_ms / 1000.0

    @property
    def upload_limit_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @classmethod
    def from_env(cls, workspace_dir: Path | None = None) -> Settings:
        workspace = Path(workspace_dir or os.getenv("MACHINE_JOBS_WORKSPACE", "workspace"))
        return cls(
            workspace_dir=workspace,
            snapshot_path=Path(os.getenv("MACHINE_JOBS_SNAPSHOT", str(workspace / "jobs.json"))),
            history_path=Path(os.getenv("MACHINE_JOBS_HISTORY", str(workspace / "history.json"))),
            schedule_path=Path(os.getenv("MACHINE_JOBS_SCHEDULE", str(workspace / "schedule.json"))),
            checkpoint_seconds=_env_int("MACHINE_JOBS_CHECKPOINT_SECONDS", 30, minimum=1),
            schedule_check_seconds=_env_int("MACHINE_JOBS_SCHEDULE_CHECK_SECONDS", 60, minimum=1),
            history_size=_env_int("MACHINE_JOBS_HISTORY_SIZE", 1000, minimum=1),
            line_delay_ms=_env_int("MACHINE_JOBS_LINE_DELAY_MS", 50),
            max_upload_mb=_env_int("MACHINE_JOBS_MAX_UPLOAD_MB", 64, minimum=1),
            host=os.getenv("MACHINE_JOBS_HOST", "127.0.0.1"),
            port=_env_int("MACHINE_JOBS_PORT", 8765, minimum=1),
        )
