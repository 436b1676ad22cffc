"""
Tests for the durable job store and the per-site lock.
"""

import json
import os
import time
from datetime import timedelta

import pytest

from site_migrator.core.exceptions import (
    JobAlreadyRunning,
    JobConflict,
    JobNotFound,
    ValidationError,
)
from site_migrator.models.job import Direction, JobError, JobStatus, MigrationJob
from site_migrator.orchestrator.store import JobStore, RunLease, SiteLock, validate_job_id
from site_migrator.utils.helpers import utcnow


def make_job(job_id="job-1", site_id="site") -> MigrationJob:
    return MigrationJob(job_id=job_id, site_id=site_id, direction=Direction.EXPORT)


class TestJobStore:
    """Test cases for JobStore."""

    def test_create_and_load(self, tmp_path):
        store = JobStore(tmp_path)
        store.create(make_job())

        job = store.load("job-1")

        assert job.version == 1
        assert job.status == JobStatus.PENDING
        assert (tmp_path / "job-1.json").is_file()
        assert not (tmp_path / "job-1.lock").exists()

    def test_load_unknown(self, tmp_path):
        with pytest.raises(JobNotFound):
            JobStore(tmp_path).load("missing")

    def test_create_twice_conflicts(self, tmp_path):
        store = JobStore(tmp_path)
        store.create(make_job())
        with pytest.raises(JobConflict):
            store.create(make_job())

    def test_save_bumps_version(self, tmp_path):
        store = JobStore(tmp_path)
        store.create(make_job())
        job = store.load("job-1")
        job.status_message = "Working"

        store.save(job)

        stored = store.load("job-1")
        assert stored.version == 2
        assert stored.status_message == "Working"

    def test_stale_write_is_rejected(self, tmp_path):
        store = JobStore(tmp_path)
        store.create(make_job())
        first = store.load("job-1")
        second = store.load("job-1")

        store.save(first)
        with pytest.raises(JobConflict):
            store.save(second)

    def test_update_skips_unchanged(self, tmp_path):
        store = JobStore(tmp_path)
        store.create(make_job())

        store.update("job-1", lambda job: False)

        assert store.load("job-1").version == 1

    def test_update_applies_mutation(self, tmp_path):
        store = JobStore(tmp_path)
        store.create(make_job())

        def cancel(job):
            job.cancel_requested = True
            return True

        job = store.update("job-1", cancel)

        assert job.cancel_requested
        assert store.load("job-1").cancel_requested

    def test_list_jobs_filters_by_site(self, tmp_path):
        store = JobStore(tmp_path)
        store.create(make_job("a", site_id="one"))
        store.create(make_job("b", site_id="two"))
        (tmp_path / "garbage.json").write_text("{not json")

        assert [job.job_id for job in store.list_jobs("one")] == ["a"]
        assert len(store.list_jobs()) == 2

    def test_purge_expired_terminal_jobs(self, tmp_path):
        store = JobStore(tmp_path, job_ttl_seconds=60)
        job = make_job()
        job.fail(JobError(kind="X", message="x"), "failed")
        store.create(job)
        record = json.loads((tmp_path / "job-1.json").read_text())
        record["updated_at"] = (utcnow() - timedelta(hours=1)).isoformat()
        (tmp_path / "job-1.json").write_text(json.dumps(record))

        assert store.purge_expired() == 1
        assert not store.exists("job-1")

    def test_stale_write_lock_is_removed(self, tmp_path):
        store = JobStore(tmp_path, stale_lock_seconds=1)
        store.create(make_job())
        lock = tmp_path / "job-1.lock"
        lock.write_text("123")
        old = time.time() - 10
        os.utime(lock, (old, old))

        job = store.load("job-1")
        store.save(job)

        assert store.load("job-1").version == 2

    def test_held_write_lock_times_out(self, tmp_path):
        store = JobStore(tmp_path, lock_timeout=0.05)
        store.create(make_job())
        (tmp_path / "job-1.lock").write_text("123")

        with pytest.raises(JobConflict):
            store.save(store.load("job-1"))


def test_validate_job_id():
    assert validate_job_id("job_20240101_000000_abcd1234") == "job_20240101_000000_abcd1234"
    with pytest.raises(ValidationError):
        validate_job_id("../escape")
    with pytest.raises(ValidationError):
        validate_job_id("")


class TestSiteLock:
    """Test cases for the one-job-per-site lock."""

    def test_acquire_and_release(self, tmp_path):
        lock = SiteLock(tmp_path, "site")

        lock.acquire("job-1", is_stale=lambda holder: False)

        assert lock.holder() == "job-1"
        assert lock.release("job-1")
        assert lock.holder() is None

    def test_second_job_is_refused(self, tmp_path):
        lock = SiteLock(tmp_path, "site")
        lock.acquire("job-1", is_stale=lambda holder: False)

        with pytest.raises(JobAlreadyRunning) as exc_info:
            lock.acquire("job-2", is_stale=lambda holder: False)

        assert exc_info.value.active_job_id == "job-1"

    def test_reacquire_by_holder(self, tmp_path):
        lock = SiteLock(tmp_path, "site")
        lock.acquire("job-1", is_stale=lambda holder: False)
        lock.acquire("job-1", is_stale=lambda holder: False)

        assert lock.holder() == "job-1"

    def test_stale_holder_is_evicted(self, tmp_path):
        lock = SiteLock(tmp_path, "site")
        lock.acquire("job-1", is_stale=lambda holder: False)

        lock.acquire("job-2", is_stale=lambda holder: holder == "job-1")

        assert lock.holder() == "job-2"

    def test_release_by_other_job_is_ignored(self, tmp_path):
        lock = SiteLock(tmp_path, "site")
        lock.acquire("job-1", is_stale=lambda holder: False)

        assert not lock.release("job-2")
        assert lock.holder() == "job-1"


class TestRunLease:
    """Test cases for the per-job execution lease."""

    def test_second_holder_is_refused(self, tmp_path):
        first = RunLease(tmp_path, "job-1", stale_after=60)
        second = RunLease(tmp_path, "job-1", stale_after=60)

        assert first.acquire() is True
        assert second.acquire() is False
        assert first.held and not second.held

        first.release()
        assert not first.path.exists()
        assert second.acquire() is True

    def test_leases_are_per_job(self, tmp_path):
        assert RunLease(tmp_path, "job-1", stale_after=60).acquire()
        assert RunLease(tmp_path, "job-2", stale_after=60).acquire()

    def test_stale_lease_is_reclaimed(self, tmp_path):
        abandoned = RunLease(tmp_path, "job-1", stale_after=60)
        abandoned.acquire()
        old = time.time() - 120
        os.utime(abandoned.path, (old, old))

        assert RunLease(tmp_path, "job-1", stale_after=60).acquire() is True

    def test_release_without_holding_keeps_file(self, tmp_path):
        holder = RunLease(tmp_path, "job-1", stale_after=60)
        holder.acquire()

        RunLease(tmp_path, "job-1", stale_after=60).release()

        assert holder.path.exists()

    def test_store_hands_out_leases_beside_records(self, tmp_path):
        store = JobStore(tmp_path / "jobs")

        lease = store.lease("job-1", stale_after=30)

        assert lease.path == tmp_path / "jobs" / "job-1.run"
        assert lease.stale_after == 30
