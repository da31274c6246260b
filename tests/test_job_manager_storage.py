from __future__ import annotations

import json
import tempfile
import threading
import unittest
from pathlib import Path

from machine_jobs.errors import AlreadyActiveError, PersistenceError
from machine_jobs.job_manager import JobManager
from machine_jobs.job_queue import JobQueue
from machine_jobs.models import Job, JobStatus
from machine_jobs.persistence import load_jobs, set_aside, write_json


class JobQueueStorageTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name)
        self.snapshot = self.workspace / "state" / "jobs.json"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_running_job_is_requeued_on_load(self) -> None:
        queue = JobQueue()
        job_a = queue.add_job(Job.create("Job A", gcode_content="G0 X0\nG1 X1\nG1 X2"))
        job_b = queue.add_job(Job.create("Job B", priority=8))
        queue.start_job(job_a.id)
        job_a.update_progress(0.4)
        job_a.lines_processed = 1

        before = {job.id: job.to_dict() for job in queue.jobs}
        queue.save_to_file(self.snapshot)
        loaded = JobQueue.load_from_file(self.snapshot)

        self.assertEqual(len(loaded), 2)
        self.assertEqual(loaded.active_jobs, set())
        for job in loaded.jobs:
            self.assertEqual(job.status, JobStatus.PENDING)
            expected = dict(before[job.id])
            expected["status"] = "pending"
            self.assertEqual(job.to_dict(), expected)
        self.assertEqual([job.id for job in loaded.jobs], [job_a.id, job_b.id])

    def test_bookmark_survives_reload(self) -> None:
        queue = JobQueue()
        job = queue.add_job(Job.create("Job", gcode_content="G0\nG1\nG2\nG3"))
        queue.start_job(job.id)
        job.interrupt(2)
        queue.release(job.id)
        queue.save_to_file(self.snapshot)

        restored = JobQueue.load_from_file(self.snapshot).get_job(job.id)
        self.assertEqual(restored.status, JobStatus.PAUSED)
        self.assertEqual(restored.last_completed_line, 2)
        self.assertTrue(restored.can_resume_job())

    def test_active_jobs_are_not_written(self) -> None:
        queue = JobQueue()
        job = queue.add_job(Job.create("Job"))
        queue.start_job(job.id)
        queue.save_to_file(self.snapshot)

        payload = json.loads(self.snapshot.read_text(encoding="utf-8"))
        self.assertNotIn("active_jobs", payload)
        self.assertEqual(payload["version"], 1)
        self.assertEqual(len(payload["jobs"]), 1)

    def test_bare_list_payload_is_accepted(self) -> None:
        job = Job.create("Job")
        job.start()
        jobs = load_jobs([job.to_dict()])
        self.assertEqual(jobs[0].status, JobStatus.PENDING)

    def test_missing_file_raises_persistence_error(self) -> None:
        with self.assertRaises(PersistenceError):
            JobQueue.load_from_file(self.workspace / "missing.json")

    def test_corrupt_file_raises_persistence_error(self) -> None:
        self.snapshot.parent.mkdir(parents=True)
        self.snapshot.write_text("{not json", encoding="utf-8")
        with self.assertRaises(PersistenceError):
            JobQueue.load_from_file(self.snapshot)

    def test_invalid_record_raises_persistence_error(self) -> None:
        self.snapshot.parent.mkdir(parents=True)
        self.snapshot.write_text(json.dumps({"jobs": [{"name": "no id"}]}), encoding="utf-8")
        with self.assertRaises(PersistenceError):
            JobQueue.load_from_file(self.snapshot)

    def test_write_leaves_no_temporary_file(self) -> None:
        JobQueue([Job.create("Job")]).save_to_file(self.snapshot)
        self.assertEqual([p.name for p in self.snapshot.parent.iterdir()], ["jobs.json"])

    def test_concurrent_writes_do_not_collide(self) -> None:
        errors: list[Exception] = []

        def writer(worker: int) -> None:
            for round_index in range(50):
                try:
                    write_json(self.snapshot, {"version": 1, "worker": worker, "round": round_index, "jobs": []})
                except PersistenceError as exc:
                    errors.append(exc)

        threads = [threading.Thread(target=writer, args=(worker,)) for worker in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        payload = json.loads(self.snapshot.read_text(encoding="utf-8"))
        self.assertIn(payload["worker"], range(4))
        self.assertEqual([p.name for p in self.snapshot.parent.iterdir()], ["jobs.json"])

    def test_set_aside_keeps_file_bytes(self) -> None:
        self.snapshot.parent.mkdir(parents=True)
        self.snapshot.write_bytes(b"\x00garbage")

        kept = set_aside(self.snapshot)

        self.assertFalse(self.snapshot.exists())
        self.assertTrue(kept.name.startswith("jobs.json.corrupt-"))
        self.assertEqual(kept.read_bytes(), b"\x00garbage")

    def test_dispatch_count_survives_reload(self) -> None:
        manager = JobManager()
        job = manager.create_job("Job", gcode_content="G0\nG1\nG2")
        manager.start_job(job.id)
        manager.pause_job(job.id)
        manager.save_jobs(self.snapshot)

        restored = JobManager()
        restored.load_jobs(self.snapshot)
        self.assertEqual(restored.get_job(job.id).dispatch_count, 1)
        restored.resume_job(job.id)
        self.assertEqual(restored.get_job(job.id).dispatch_count, 2)

    def test_manager_refuses_reload_while_active(self) -> None:
        manager = JobManager()
        job = manager.create_job("Job", gcode_content="G0\nG1")
        manager.save_jobs(self.snapshot)
        manager.start_job(job.id)

        with self.assertRaises(AlreadyActiveError):
            manager.load_jobs(self.snapshot)

    def test_manager_round_trip(self) -> None:
        manager = JobManager()
        running = manager.create_job("Running", gcode_content="G0\nG1\nG2")
        pending = manager.create_job("Pending", gcode_content="G0")
        manager.start_job(running.id)
        manager.save_jobs(self.snapshot)

        restored = JobManager()
        self.assertEqual(restored.load_jobs(self.snapshot), 2)
        self.assertEqual(restored.active_job_ids(), set())
        self.assertEqual(restored.get_job(running.id).status, JobStatus.PENDING)
        self.assertEqual(restored.get_job(pending.id).status, JobStatus.PENDING)

    def test_manager_history_round_trip(self) -> None:
        manager = JobManager()
        job = manager.create_job("Done", gcode_content="G0")
        manager.cancel_job(job.id)
        history_path = self.workspace / "history.json"
        manager.save_history(history_path)

        restored = JobManager()
        self.assertEqual(restored.load_history(history_path), 1)
        self.assertEqual([item.id for item in restored.history()], [job.id])

        exported = restored.export_history()
        restored.clear_history()
        self.assertEqual(restored.analytics().total_jobs, 0)
        self.assertEqual(restored.import_history(exported), 1)
        self.assertEqual(restored.analytics().cancelled_jobs, 1)


if __name__ == "__main__":
    unittest.main()
