"""Contract between the job manager and whatever transmits lines to the machine.

The manager hands a streamer a line range with ``dispatch`` and never waits on
it. Streamers report back only through events posted to an ``EventSink``; line
indices in events are absolute positions in the job's program.

Every dispatch carries a ``run`` number and every event must echo the number of
the dispatch it belongs to. The manager drops events from an earlier run of the
same job, which can still be queued after a pause and resume.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .models import INTERRUPTED_MESSAGE

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LineCompleted:
    job_id: str
    line_index: int
    run: int = 0


@dataclass(frozen=True, slots=True)
class Fault:
    job_id: str
    last_known_line: int
    run: int = 0
    reason: str = INTERRUPTED_MESSAGE


StreamerEvent = LineCompleted | Fault
EventSink = Callable[[StreamerEvent], None]


class MachineStreamer(Protocol):
    def dispatch(self, job_id: str, start_line: int, lines: list[str], run: int = 0) -> None:
        """Begin transmitting ``lines``; ``lines[0]`` is program line ``start_line``. Must not block.

        Events for this range are tagged with ``run``.
        """

    def stop(self, job_id: str) -> None:
        """Stop transmitting for ``job_id``. Unknown ids are ignored."""


class SimulatedStreamer:
    """Pretends to execute lines at a fixed pace on a worker thread per dispatch."""

    def __init__(self, emit: EventSink, line_delay: float = 0.05):
        self.emit = emit
        self.line_delay = max(line_delay, 0.0)
        self._lock = threading.Lock()
        self._runs: dict[str, tuple[threading.Thread, threading.Event]] = {}
        self._faults: dict[str, int] = {}

    def inject_fault(self, job_id: str, line_index: int) -> None:
        """Fail once when ``line_index`` of ``job_id`` is reached."""
        with self._lock:
            self._faults[job_id] = line_index

    def is_streaming(self, job_id: str) -> bool:
        with self._lock:
            entry = self._runs.get(job_id)
            return bool(entry and entry[0].is_alive())

    def dispatch(self, job_id: str, start_line: int, lines: list[str], run: int = 0) -> None:
        self.stop(job_id)
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(job_id, start_line, list(lines), run, stop_event),
            name=f"streamer-{job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._runs[job_id] = (thread, stop_event)
        thread.start()
        logger.debug(
            "[streamer] dispatched job=%s run=%d from line %d (%d lines)", job_id, run, start_line, len(lines)
        )

    def stop(self, job_id: str) -> None:
        with self._lock:
            entry = self._runs.pop(job_id, None)
        if entry is None:
            return
        thread, stop_event = entry
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=2)

    def close(self) -> None:
        with self._lock:
            job_ids = list(self._runs)
        for job_id in job_ids:
            self.stop(job_id)

    def _take_fault(self, job_id: str, line_index: int) -> bool:
        with self._lock:
            if self._faults.get(job_id) == line_index:
                del self._faults[job_id]
                return True
            return False

    def _run(self, job_id: str, start_line: int, lines: list[str], run: int, stop_event: threading.Event) -> None:
        for offset in range(len(lines)):
            line_index = start_line + offset
            if stop_event.wait(self.line_delay):
                return
            if self._take_fault(job_id, line_index):
                self.emit(Fault(job_id, max(line_index - 1, start_line), run))
                return
            self.emit(LineCompleted(job_id, line_index, run))
