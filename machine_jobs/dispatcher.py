from __future__ import annotations

import logging
import queue
import threading

from .errors import JobError
from .job_manager import JobManager
from .streamer import StreamerEvent

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Drains streamer events into the job manager on one thread."""

    def __init__(self, manager: JobManager, poll_interval: float = 0.2):
        self.manager = manager
        self.poll_interval = poll_interval
        self._events: queue.Queue[StreamerEvent] = queue.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def post(self, event: StreamerEvent) -> None:
        self._events.put(event)

    def pending(self) -> int:
        return self._events.qsize()

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="job-events", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def drain(self) -> int:
        """Handle every queued event on the calling thread."""
        handled = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return handled
            self._handle(event)
            handled += 1

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            self._handle(event)

    def _handle(self, event: StreamerEvent) -> None:
        try:
            self.manager.handle_event(event)
        except JobError as exc:
            logger.warning("[job-events] dropped %s for job=%s: %s", type(event).__name__, event.job_id, exc)
        except Exception:
            logger.exception("[job-events] unexpected failure handling %r", event)
