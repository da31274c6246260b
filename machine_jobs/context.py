from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from .config import Settings
from .dispatcher import EventDispatcher
from .errors import JobError, PersistenceError
from .history import JobHistory
from .job_manager import JobManager
from .persistence import set_aside
from .streamer import EventSink, MachineStreamer, SimulatedStreamer

logger = logging.getLogger(__name__)

StreamerFactory = Callable[[EventSink], MachineStreamer]


class ServiceContext:
    """Everything a running service needs, built once at process start.

    Layers that need the job manager receive this handle explicitly; nothing
    reaches for a module-level instance.
    """

    def __init__(self, settings: Settings, streamer_factory: StreamerFactory | None = None):
        self.settings = settings
        self.manager = JobManager(history=JobHistory(max_size=settings.history_size))
        self.dispatcher = EventDispatcher(self.manager)
        factory = streamer_factory or (lambda emit: SimulatedStreamer(emit, line_delay=settings.line_delay))
        self.streamer = factory(self.dispatcher.post)
        self.manager.attach_streamer(self.streamer)

        self._checkpoint_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _restore_file(self, path: Path, load: Callable[[Path], int], label: str) -> int:
        if not path.exists():
            return 0
        try:
            return load(path)
        except PersistenceError as exc:
            kept = set_aside(path)
            logger.error("[machine-jobs] could not restore %s, starting empty (kept as %s): %s", label, kept, exc)
            return 0

    def restore(self) -> int:
        """Load the last saved state. An unreadable file is moved aside and that part starts empty."""
        self.settings.workspace_dir.mkdir(parents=True, exist_ok=True)
        restored = self._restore_file(self.settings.snapshot_path, self.manager.load_jobs, "queue")
        self._restore_file(self.settings.history_path, self.manager.load_history, "history")
        self._restore_file(self.settings.schedule_path, self.manager.load_scheduler, "schedule")
        return restored

    def checkpoint(self) -> int:
        with self._checkpoint_lock:
            saved = self.manager.save_jobs(self.settings.snapshot_path)
            self.manager.save_history(self.settings.history_path)
            self.manager.save_scheduler(self.settings.schedule_path)
        return saved

    def process_schedules(self) -> int:
        queued = self.manager.process_scheduled_jobs()
        if queued:
            logger.info("[machine-jobs] queued %d scheduled job(s)", len(queued))
        return len(queued)

    def _every(self, seconds: int, action: Callable[[], object], label: str) -> None:
        while not self._stop.wait(seconds):
            try:
                action()
            except JobError as exc:
                logger.error("[machine-jobs] %s failed: %s", label, exc)

    def _spawn(self, seconds: int, action: Callable[[], object], label: str) -> None:
        thread = threading.Thread(target=self._every, args=(seconds, action, label), name=f"job-{label}", daemon=True)
        self._threads.append(thread)
        thread.start()

    def start(self) -> None:
        restored = self.restore()
        if restored:
            logger.info("[machine-jobs] restored %d job(s)", restored)
        self.process_schedules()
        self.dispatcher.start()
        self._stop.clear()
        self._spawn(self.settings.checkpoint_seconds, self.checkpoint, "checkpoint")
        self._spawn(self.settings.schedule_check_seconds, self.process_schedules, "schedule")

    def close(self) -> None:
        self._stop.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=2)
        self._threads.clear()
        close_streamer = getattr(self.streamer, "close", None)
        if callable(close_streamer):
            close_streamer()
        self.dispatcher.stop()
        self.dispatcher.drain()
        try:
            self.checkpoint()
        except PersistenceError as exc:
            logger.error("[machine-jobs] final checkpoint failed: %s", exc)
