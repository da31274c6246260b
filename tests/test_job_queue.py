from __future__ import annotations

import unittest
from datetime import timedelta

from machine_jobs.errors import AlreadyActiveError, InvalidStateError, JobNotFoundError
from machine_jobs.job_queue import JobQueue
from machine_jobs.models import Job, JobStatus


class JobQueueTest(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = JobQueue()

    def test_next_pending_prefers_highest_priority(self) -> None:
        self.queue.add_job(Job.create("Job 1", priority=1))
        self.queue.add_job(Job.create("Job 2", priority=10))

        next_job = self.queue.get_next_pending_job()
        assert next_job is not None
        self.assertEqual(next_job.name, "Job 2")
        self.assertEqual(next_job.priority, 10)

    def test_equal_priority_resolves_by_creation_time(self) -> None:
        first = Job.create("first", priority=5)
        second = Job.create("second", priority=5)
        second.created_at = first.created_at - timedelta(seconds=1)
        self.queue.add_job(first)
        self.queue.add_job(second)

        next_job = self.queue.get_next_pending_job()
        assert next_job is not None
        self.assertEqual(next_job.name, "second")

    def test_equal_priority_and_timestamp_resolves_by_position(self) -> None:
        jobs = [Job.create(f"job {i}", priority=3) for i in range(3)]
        for job in jobs:
            job.created_at = jobs[0].created_at
            self.queue.add_job(job)

        next_job = self.queue.get_next_pending_job()
        assert next_job is not None
        self.assertEqual(next_job.id, jobs[0].id)

    def test_next_pending_skips_non_pending_and_does_not_mutate(self) -> None:
        running = self.queue.add_job(Job.create("running", priority=10))
        waiting = self.queue.add_job(Job.create("waiting", priority=2))
        self.queue.start_job(running.id)

        self.assertIs(self.queue.get_next_pending_job(), waiting)
        self.assertIs(self.queue.get_next_pending_job(), waiting)
        self.assertEqual(waiting.status, JobStatus.PENDING)

    def test_next_pending_on_empty_queue(self) -> None:
        self.assertIsNone(self.queue.get_next_pending_job())

    def test_add_rejects_non_pending_and_duplicates(self) -> None:
        job = Job.create("job")
        self.queue.add_job(job)
        with self.assertRaises(InvalidStateError):
            self.queue.add_job(job)

        started = Job.create("started")
        started.start()
        with self.assertRaises(InvalidStateError):
            self.queue.add_job(started)

    def test_get_job_not_found(self) -> None:
        with self.assertRaises(JobNotFoundError):
            self.queue.get_job("nonexistent-id")
        self.assertIsNone(self.queue.find_job("nonexistent-id"))

    def test_start_job_marks_active(self) -> None:
        job = self.queue.add_job(Job.create("job"))
        self.queue.start_job(job.id)

        self.assertEqual(job.status, JobStatus.RUNNING)
        self.assertEqual(self.queue.active_jobs, {job.id})
        self.assertEqual(self.queue.active_job_list(), [job])

    def test_start_job_enforces_single_machine(self) -> None:
        first = self.queue.add_job(Job.create("first"))
        second = self.queue.add_job(Job.create("second"))
        self.queue.start_job(first.id)

        with self.assertRaises(AlreadyActiveError):
            self.queue.start_job(second.id)
        self.assertEqual(second.status, JobStatus.PENDING)
        self.assertEqual(self.queue.active_jobs, {first.id})

    def test_second_job_cannot_resume_while_one_is_active(self) -> None:
        paused = self.queue.add_job(Job.create("paused"))
        self.queue.start_job(paused.id)
        paused.interrupt(0)
        self.queue.release(paused.id)
        running = self.queue.add_job(Job.create("running"))
        self.queue.start_job(running.id)

        paused.resume()
        with self.assertRaises(AlreadyActiveError):
            self.queue.activate(paused.id)
        self.assertEqual(self.queue.active_jobs, {running.id})

    def test_queue_has_no_concurrency_setting(self) -> None:
        with self.assertRaises(TypeError):
            JobQueue(max_concurrent_jobs=2)

    def test_start_job_requires_pending(self) -> None:
        job = self.queue.add_job(Job.create("job"))
        self.queue.start_job(job.id)
        self.queue.release(job.id)

        with self.assertRaises(InvalidStateError) as ctx:
            self.queue.start_job(job.id)
        self.assertNotIsInstance(ctx.exception, AlreadyActiveError)

    def test_remove_refuses_active_job(self) -> None:
        active = self.queue.add_job(Job.create("active"))
        idle = self.queue.add_job(Job.create("idle"))
        self.queue.start_job(active.id)

        with self.assertRaises(InvalidStateError):
            self.queue.remove_job(active.id)
        self.assertIs(self.queue.remove_job(idle.id), idle)
        self.assertEqual(len(self.queue), 1)

    def test_clear_finished_jobs(self) -> None:
        done = self.queue.add_job(Job.create("done"))
        self.queue.add_job(Job.create("waiting"))
        self.queue.start_job(done.id)
        done.complete()
        self.queue.release(done.id)

        removed = self.queue.clear_finished_jobs()
        self.assertEqual([job.id for job in removed], [done.id])
        self.assertEqual([job.name for job in self.queue.jobs], ["waiting"])

    def test_reorder_requires_permutation(self) -> None:
        a = self.queue.add_job(Job.create("a"))
        b = self.queue.add_job(Job.create("b"))

        self.queue.reorder_jobs([b.id, a.id])
        self.assertEqual([job.name for job in self.queue.jobs], ["b", "a"])

        with self.assertRaises(InvalidStateError):
            self.queue.reorder_jobs([a.id])
        with self.assertRaises(InvalidStateError):
            self.queue.reorder_jobs([a.id, a.id])


if __name__ == "__main__":
    unittest.main()
