from __future__ import annotations

import pytest

from jobs.models import Job, JobStatus
from jobs.store import JobStore


class ManualClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def job_store(clock) -> JobStore:
    return JobStore(ttl_seconds=30, clock=clock)


def test_records_are_copied_on_write_and_read(job_store):
    record = {"id": "job-1", "status": "PENDING", "input": {"prompt": "a cat"}}
    job_store.set("job-1", record)
    record["input"]["prompt"] = "changed by caller"

    snapshot = job_store.get("job-1")
    snapshot["status"] = "FAILED"

    assert job_store.get("job-1") == {"id": "job-1", "status": "PENDING", "input": {"prompt": "a cat"}}


def test_records_expire_after_ttl(job_store, clock):
    job_store.set("job-1", {"id": "job-1"})
    clock.now += 29
    assert job_store.get("job-1") is not None
    clock.now += 2
    assert job_store.get("job-1") is None
    assert len(job_store) == 0


def test_explicit_ttl_overrides_default(job_store, clock):
    job_store.set("short", {"id": "short"}, ttl_seconds=5)
    clock.now += 6
    assert job_store.get("short") is None


def test_update_merges_and_keeps_expiry(job_store, clock):
    job_store.set("job-1", {"id": "job-1", "status": "PENDING", "result": None})
    clock.now += 20
    merged = job_store.update("job-1", {"status": "PROCESSING"})
    assert merged == {"id": "job-1", "status": "PROCESSING", "result": None}
    clock.now += 15
    assert job_store.get("job-1") is None


def test_update_missing_record_returns_none(job_store):
    assert job_store.update("missing", {"status": "FAILED"}) is None
    assert job_store.get("missing") is None


def test_mutate_can_skip_write(job_store):
    job_store.set("job-1", {"id": "job-1", "status": "COMPLETED"})

    def _mutator(record):
        record["status"] = "FAILED"
        return False

    assert job_store.mutate("job-1", _mutator) == {"id": "job-1", "status": "COMPLETED"}
    assert job_store.get("job-1")["status"] == "COMPLETED"
    assert job_store.mutate("missing", _mutator) is None


def test_transition_only_applies_from_expected_status(job_store):
    job = Job(id="job-1")
    job_store.set(job.id, job.to_dict())

    claimed, applied = job_store.transition(job.id, (JobStatus.PENDING,), lambda current: current.mark_processing())
    assert applied is True
    assert claimed.status == JobStatus.PROCESSING

    again, applied_again = job_store.transition(job.id, (JobStatus.PENDING,), lambda current: current.mark_processing())
    assert applied_again is False
    assert again.status == JobStatus.PROCESSING

    assert job_store.transition("missing", (JobStatus.PENDING,), lambda current: None) == (None, False)


def test_transition_apply_can_veto(job_store):
    job = Job(id="job-1")
    job_store.set(job.id, job.to_dict())
    before = job_store.get(job.id)

    def _veto(current):
        current.mark_failed("should not be stored")
        return False

    current, applied = job_store.transition(job.id, (JobStatus.PENDING,), _veto)
    assert applied is False
    assert current.status == JobStatus.PENDING
    assert job_store.get(job.id) == before
