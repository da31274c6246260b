from __future__ import annotations

import time
import unittest

from machine_jobs.dispatcher import EventDispatcher
from machine_jobs.job_manager import JobManager
from machine_jobs.models import JobStatus
from machine_jobs.streamer import Fault, LineCompleted, SimulatedStreamer

PROGRAM = "\n".join(f"G1 X{i}" for i in range(8))


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class SimulatedStreamerTest(unittest.TestCase):
    def test_emits_absolute_line_indices(self) -> None:
        events = []
        streamer = SimulatedStreamer(events.append, line_delay=0)
        streamer.dispatch("job", 3, ["G1 X3", "G1 X4"], run=7)

        self.assertTrue(wait_for(lambda: len(events) == 2))
        self.assertEqual(events, [LineCompleted("job", 3, 7), LineCompleted("job", 4, 7)])
        streamer.close()

    def test_injected_fault_reports_last_confirmed_line(self) -> None:
        events = []
        streamer = SimulatedStreamer(events.append, line_delay=0)
        streamer.inject_fault("job", 2)
        streamer.dispatch("job", 0, ["a", "b", "c", "d"])

        self.assertTrue(wait_for(lambda: events and isinstance(events[-1], Fault)))
        self.assertEqual(events[-1].last_known_line, 1)
        self.assertEqual(len(events), 3)
        streamer.close()

    def test_stop_halts_stream(self) -> None:
        events = []
        streamer = SimulatedStreamer(events.append, line_delay=0.05)
        streamer.dispatch("job", 0, ["x"] * 100)
        streamer.stop("job")
        count = len(events)
        time.sleep(0.15)

        self.assertEqual(len(events), count)
        self.assertFalse(streamer.is_streaming("job"))


class EventDispatcherTest(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = JobManager()
        self.dispatcher = EventDispatcher(self.manager, poll_interval=0.05)
        self.streamer = SimulatedStreamer(self.dispatcher.post, line_delay=0.001)
        self.manager.attach_streamer(self.streamer)
        self.dispatcher.start()

    def tearDown(self) -> None:
        self.streamer.close()
        self.dispatcher.stop()

    def _status(self, job_id: str) -> JobStatus:
        return self.manager.get_job(job_id).status

    def test_job_runs_to_completion(self) -> None:
        job = self.manager.create_job("run", gcode_content=PROGRAM)
        self.manager.start_job(job.id)

        self.assertTrue(wait_for(lambda: self._status(job.id) == JobStatus.COMPLETED))
        done = self.manager.get_job(job.id)
        self.assertEqual(done.progress, 1.0)
        self.assertEqual(done.lines_processed, 8)
        self.assertEqual(self.manager.active_job_ids(), set())

    def test_fault_then_resume_finishes_job(self) -> None:
        job = self.manager.create_job("faulty", gcode_content=PROGRAM)
        self.streamer.inject_fault(job.id, 5)
        self.manager.start_job(job.id)

        self.assertTrue(wait_for(lambda: self._status(job.id) == JobStatus.PAUSED))
        paused = self.manager.get_job(job.id)
        self.assertEqual(paused.last_completed_line, 4)

        self.assertEqual(self.manager.resume_job(job.id), 4)
        self.assertTrue(wait_for(lambda: self._status(job.id) == JobStatus.COMPLETED))
        self.assertEqual(self.manager.get_job(job.id).resume_count, 1)

    def test_drain_handles_queued_events(self) -> None:
        self.dispatcher.stop()
        job = self.manager.create_job("manual", gcode_content="G0\nG1")
        self.manager.attach_streamer(None)
        run = self.manager.start_job(job.id).dispatch_count
        self.dispatcher.post(LineCompleted(job.id, 0, run))
        self.dispatcher.post(LineCompleted(job.id, 1, run))

        self.assertEqual(self.dispatcher.drain(), 2)
        self.assertEqual(self._status(job.id), JobStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()
