"""Tests for sourcesweep.engine (Job, JobRegistry, Engine triggers)."""
from __future__ import annotations

import threading
import time

import pytest

from sourcesweep.engine import Engine, Job, JobRegistry, ReadWriteLock
from sourcesweep.errors import EntityNotFoundError, ValidationError
from sourcesweep.models import JobState

from conftest import make_prober, wait_for_job


class TestJob:
    def test_job_initial_state(self):
        job = Job("test_1", "test")
        assert job.status is JobState.RUNNING
        assert job.progress == 0
        assert job.end_time is None
        assert job.error is None

    def test_complete_stamps_end_time(self):
        job = Job("test_1", "test")
        job.complete("done")
        assert job.status is JobState.COMPLETED
        assert job.progress == 100
        assert job.message == "done"
        assert job.end_time is not None

    def test_error_is_one_way(self):
        """A later completion must not overwrite an error."""
        job = Job("test_1", "test")
        job.fail("boom")
        end_time = job.end_time
        job.complete("done")
        assert job.status is JobState.ERROR
        assert job.error == "boom"
        assert job.end_time == end_time

    def test_terminal_states_are_final(self):
        job = Job("test_1", "test")
        job.complete()
        job.fail("late")
        assert job.status is JobState.COMPLETED
        assert job.error is None


class TestJobRegistry:
    def test_create_job_ids_unique(self):
        registry = JobRegistry()
        ids = {registry.create_job("test") for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("test_") for i in ids)

    def test_snapshot_unknown_job(self):
        assert JobRegistry().snapshot("nope") is None

    def test_mutate_unknown_job(self):
        with pytest.raises(EntityNotFoundError):
            JobRegistry().mutate("nope", lambda job: None)

    def test_snapshot_is_a_copy(self):
        registry = JobRegistry()
        job_id = registry.create_job("test")
        before = registry.snapshot(job_id)
        registry.update(job_id, progress=40, message="halfway")
        assert before.progress == 0
        assert registry.snapshot(job_id).progress == 40

    def test_listeners_receive_every_mutation(self):
        registry = JobRegistry()
        seen = []
        registry.add_listener(lambda snapshot: seen.append((snapshot.progress, snapshot.status)))
        job_id = registry.create_job("test")
        registry.update(job_id, progress=50)
        registry.complete(job_id)
        assert seen == [
            (0, JobState.RUNNING),
            (50, JobState.RUNNING),
            (100, JobState.COMPLETED),
        ]

    def test_listener_may_read_registry(self):
        """Listeners run outside the lock and can query the registry."""
        registry = JobRegistry()
        seen = []
        registry.add_listener(lambda snapshot: seen.append(registry.snapshot(snapshot.job_id)))
        job_id = registry.create_job("test")
        assert seen[0].job_id == job_id

    def test_launch_completes_with_returned_message(self):
        registry = JobRegistry()
        job_id = registry.create_job("test")
        registry.launch(job_id, lambda jid: "all good").join(timeout=2)
        job = registry.snapshot(job_id)
        assert job.status is JobState.COMPLETED
        assert job.message == "all good"

    def test_launch_marks_error_on_exception(self):
        registry = JobRegistry()
        job_id = registry.create_job("test")

        def explode(jid):
            raise ValueError("simulated failure")

        registry.launch(job_id, explode).join(timeout=2)
        job = registry.snapshot(job_id)
        assert job.status is JobState.ERROR
        assert job.error == "simulated failure"
        assert job.end_time is not None

    def test_cancel_sets_event(self):
        registry = JobRegistry()
        job_id = registry.create_job("test")
        assert registry.cancel(job_id)
        assert registry.cancel_event(job_id).is_set()

    def test_cancel_finished_job(self):
        registry = JobRegistry()
        job_id = registry.create_job("test")
        registry.complete(job_id)
        assert not registry.cancel(job_id)

    def test_cancel_unknown_job(self):
        with pytest.raises(EntityNotFoundError):
            JobRegistry().cancel("nope")


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2)

        def reader():
            with lock.read():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=3)
        assert not inside.broken

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events = []

        def reader():
            with lock.read():
                events.append("read")

        with lock.write():
            t = threading.Thread(target=reader)
            t.start()
            time.sleep(0.05)
            assert events == []
        t.join(timeout=2)
        assert events == ["read"]


class TestEngineTriggers:
    def test_invalid_date_rejected_before_job(self, engine):
        with pytest.raises(ValidationError):
            engine.start_analysis("01/02/2025")
        assert engine.list_jobs() == []

    def test_analysis_job(self, engine, stale_host):
        stale_host.add_log_source(200, "fresh", 11, "db-01", max_log_date="2025-06-01T00:00:00Z")
        job_id = engine.start_analysis("2025-01-01")
        assert job_id.startswith("test_")
        job = wait_for_job(engine, job_id)
        assert job.status is JobState.COMPLETED
        assert sorted(r.id for r in job.results) == ["100", "101"]
        assert job.end_time is not None

    def test_host_analysis_job(self, engine, stale_host):
        job = wait_for_job(engine, engine.start_host_analysis("2025-01-01"))
        assert job.status is JobState.COMPLETED
        assert [h.host_id for h in job.host_analysis] == ["10"]
        assert job.host_analysis[0].recommended

    def test_analysis_failure_marks_error(self, engine, stale_host):
        stale_host.fail("GET", "logsources")
        job = wait_for_job(engine, engine.start_analysis("2025-01-01"))
        assert job.status is JobState.ERROR
        assert "500" in job.error

    def test_retirement_requires_selection(self, engine):
        with pytest.raises(ValidationError):
            engine.start_retirement([])

    def test_retirement_requires_host_analysis(self, engine):
        with pytest.raises(ValidationError):
            engine.start_retirement(["10"])

    def test_retirement_unknown_analysis_job(self, engine):
        with pytest.raises(EntityNotFoundError):
            engine.start_retirement(["10"], analysis_job_id="apply_1")

    def test_retirement_hosts_not_in_analysis(self, engine, stale_host):
        wait_for_job(engine, engine.start_host_analysis("2025-01-01"))
        with pytest.raises(ValidationError):
            engine.start_retirement(["999"])

    def test_rollback_unknown_id(self, engine):
        with pytest.raises(EntityNotFoundError):
            engine.start_rollback("rollback_0")

    def test_cancelled_retirement_ends_in_error(self, settings, store, stale_host):
        gate = threading.Event()
        engine = Engine(settings, store=store, prober=make_prober())
        analysis = wait_for_job(engine, engine.start_host_analysis("2025-01-01"))

        # Hold the job inside its first progress update, then cancel it.
        original = engine.registry.update
        entered = threading.Event()

        def slow_update(job_id, *args, **kwargs):
            if job_id != analysis.job_id and not entered.is_set():
                entered.set()
                gate.wait(timeout=2)
            return original(job_id, *args, **kwargs)

        engine.registry.update = slow_update
        job_id = engine.start_retirement(["10"])
        assert entered.wait(timeout=2)
        engine.cancel_job(job_id)
        gate.set()

        job = wait_for_job(engine, job_id)
        assert job.status is JobState.ERROR
        assert job.error == "Job cancelled"
        assert stale_host.log_sources["100"]["recordStatus"] == "Active"
