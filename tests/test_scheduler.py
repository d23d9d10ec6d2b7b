import threading
from datetime import timedelta

import pytest

from jobsctl import repository
from jobsctl.db import connect_db
from jobsctl.errors import InvalidJobType, InvalidPayload, StoreError, StoreWriteError
from jobsctl.models import COMPLETED, FAILED, PENDING, JobType
from jobsctl.registry import HandlerRegistry
from jobsctl.scheduler import JobScheduler
from jobsctl.utils import to_iso


def boom(payload):
    raise RuntimeError("boom")


def test_scheduled_job_runs_and_completes(scheduler, load, calls):
    job_id = scheduler.schedule_job("update_top_coins", {})

    assert scheduler.process_pending_jobs() == 1

    job = load(job_id)
    assert job.status == COMPLETED
    assert job.result == {"ok": True}
    assert job.error is None
    assert job.completed_at is not None
    assert calls == [(JobType.UPDATE_TOP_COINS, {})]


def test_future_job_waits_until_due(scheduler, load, clock):
    job_id = scheduler.schedule_job("update_news", {}, clock() + timedelta(hours=1))

    assert scheduler.process_pending_jobs() == 0
    assert load(job_id).status == PENDING

    clock.advance(minutes=59)
    assert scheduler.process_pending_jobs() == 0

    clock.advance(minutes=1)
    assert scheduler.process_pending_jobs() == 1
    assert load(job_id).status == COMPLETED


def test_failing_handler_marks_job_failed(scheduler, registry, load):
    registry.register("cache_cleanup", boom)
    job_id = scheduler.schedule_job("cache_cleanup", {})

    assert scheduler.process_pending_jobs() == 1

    job = load(job_id)
    assert job.status == FAILED
    assert job.error == "boom"


def test_one_failure_does_not_stop_the_batch(scheduler, registry, load, clock, calls):
    registry.register("update_global_data", boom)
    first = scheduler.schedule_job("update_top_coins", {}, clock() - timedelta(minutes=3))
    second = scheduler.schedule_job("update_global_data", {}, clock() - timedelta(minutes=2))
    third = scheduler.schedule_job("update_news", {}, clock() - timedelta(minutes=1))

    assert scheduler.process_pending_jobs() == 3

    assert load(first).status == COMPLETED
    assert load(second).status == FAILED
    assert load(third).status == COMPLETED
    assert [jt for jt, _ in calls] == [JobType.UPDATE_TOP_COINS, JobType.UPDATE_NEWS]


def exits(payload):
    raise SystemExit(3)


def test_handler_calling_sys_exit_marks_job_failed(scheduler, registry, load):
    registry.register("update_news", exits)
    job_id = scheduler.schedule_job("update_news", {})

    assert scheduler.process_pending_jobs() == 1

    job = load(job_id)
    assert job.status == FAILED
    assert job.result is None
    assert "SystemExit" in job.error


def test_sys_exit_without_timeout_does_not_stop_the_batch(registry, db_path, clock, load):
    registry.register("update_global_data", exits)
    sched = JobScheduler(registry, db_path, reschedule_recurring=False, timeout_seconds=0, clock=clock)
    first = sched.schedule_job("update_top_coins", {}, clock() - timedelta(minutes=3))
    second = sched.schedule_job("update_global_data", {}, clock() - timedelta(minutes=2))
    third = sched.schedule_job("update_news", {}, clock() - timedelta(minutes=1))

    assert sched.process_pending_jobs() == 3

    assert load(first).status == COMPLETED
    assert load(second).status == FAILED
    assert "SystemExit" in load(second).error
    assert load(third).status == COMPLETED


def test_oldest_due_job_runs_first(scheduler, clock, calls):
    scheduler.schedule_job("update_news", {}, clock() - timedelta(minutes=1))
    scheduler.schedule_job("cache_cleanup", {}, clock() - timedelta(minutes=10))
    scheduler.schedule_job("update_top_coins", {}, clock() - timedelta(minutes=5))

    scheduler.process_pending_jobs()

    assert [jt for jt, _ in calls] == [
        JobType.CACHE_CLEANUP,
        JobType.UPDATE_TOP_COINS,
        JobType.UPDATE_NEWS,
    ]


def test_finished_jobs_are_never_picked_again(scheduler, registry, load, calls):
    registry.register("cache_cleanup", boom)
    ok = scheduler.schedule_job("update_news", {})
    bad = scheduler.schedule_job("cache_cleanup", {})
    scheduler.process_pending_jobs()
    before = (load(ok), load(bad))

    assert scheduler.process_pending_jobs() == 0
    assert (load(ok), load(bad)) == before
    assert len(calls) == 1


def test_unknown_type_is_rejected_without_a_row(scheduler, row_count):
    with pytest.raises(InvalidJobType):
        scheduler.schedule_job("not_a_real_type", {})
    assert row_count() == 0


def test_type_without_handler_is_rejected(db_path, clock, row_count):
    sched = JobScheduler(HandlerRegistry({"update_news": lambda p: None}), db_path, clock=clock)

    with pytest.raises(InvalidJobType):
        sched.schedule_job(JobType.CACHE_CLEANUP, {})
    assert row_count() == 0


def test_due_row_with_unknown_type_fails(scheduler, db_path, load, clock):
    conn = connect_db(db_path)
    try:
        job_id = repository.insert_job(
            conn, job_type="legacy_job", payload={}, scheduled_for=to_iso(clock()), now=to_iso(clock())
        )
    finally:
        conn.close()

    assert scheduler.process_pending_jobs() == 1
    job = load(job_id)
    assert job.status == FAILED
    assert "Unknown job type" in job.error


@pytest.mark.parametrize("payload", [{"limit": "many"}, {"limit": 0}, {"bogus": 1}, ["limit"]])
def test_bad_payload_is_rejected(scheduler, row_count, payload):
    with pytest.raises(InvalidPayload):
        scheduler.schedule_job("update_top_coins", payload)
    assert row_count() == 0


def test_payload_reaches_handler_as_scheduled(scheduler, load, calls):
    job_id = scheduler.schedule_job("update_crypto_market_data", {"limit": 50})

    scheduler.process_pending_jobs()

    assert load(job_id).payload == {"limit": 50}
    assert calls == [(JobType.UPDATE_CRYPTO_MARKET_DATA, {"limit": 50})]


def test_scheduled_for_accepts_iso_strings(scheduler, load):
    job_id = scheduler.schedule_job("update_news", None, "2030-01-01T00:00:00Z")
    assert load(job_id).scheduled_for == "2030-01-01T00:00:00.000000Z"


def test_hung_handler_times_out(registry, db_path, clock, load):
    release = threading.Event()

    def hang(payload):
        release.wait(5)

    registry.register("update_news", hang)
    sched = JobScheduler(registry, db_path, reschedule_recurring=False, timeout_seconds=0.2, clock=clock)
    job_id = sched.schedule_job("update_news", {})

    try:
        assert sched.process_pending_jobs() == 1
    finally:
        release.set()

    job = load(job_id)
    assert job.status == FAILED
    assert "timed out" in job.error


def test_batch_size_limits_one_call(registry, db_path, clock):
    sched = JobScheduler(registry, db_path, batch_size=2, reschedule_recurring=False, clock=clock)
    for _ in range(3):
        sched.schedule_job("update_news", {})

    assert sched.process_pending_jobs() == 2
    assert sched.process_pending_jobs() == 1
    assert sched.process_pending_jobs() == 0


def test_batch_size_comes_from_config(registry, db_path, clock):
    conn = connect_db(db_path)
    try:
        repository.set_config(conn, "batch_size", "1")
    finally:
        conn.close()
    sched = JobScheduler(registry, db_path, reschedule_recurring=False, clock=clock)
    sched.schedule_job("update_news", {})
    sched.schedule_job("update_news", {})

    assert sched.process_pending_jobs() == 1


def test_concurrent_call_claims_each_job_once(registry, db_path, clock, load, calls):
    """A second processor running mid-batch takes what is left; the first skips it."""
    other = JobScheduler(registry, db_path, reschedule_recurring=False, clock=clock)
    inner = []

    def first_handler(payload):
        calls.append((JobType.CACHE_CLEANUP, payload))
        inner.append(other.process_pending_jobs())

    registry.register("cache_cleanup", first_handler)
    sched = JobScheduler(registry, db_path, reschedule_recurring=False, clock=clock)
    a = sched.schedule_job("cache_cleanup", {}, clock() - timedelta(minutes=2))
    b = sched.schedule_job("update_news", {}, clock() - timedelta(minutes=1))

    assert sched.process_pending_jobs() == 1
    assert inner == [1]
    assert load(a).status == COMPLETED
    assert load(b).status == COMPLETED
    assert [jt for jt, _ in calls] == [JobType.CACHE_CLEANUP, JobType.UPDATE_NEWS]


def test_lost_claim_is_skipped_silently(scheduler, monkeypatch, load, calls):
    job_id = scheduler.schedule_job("update_news", {})
    monkeypatch.setattr(repository, "claim_job", lambda conn, job_id, now: False)

    assert scheduler.process_pending_jobs() == 0
    assert load(job_id).status == PENDING
    assert calls == []


def test_store_error_on_claim_skips_only_that_job(scheduler, monkeypatch, load, clock):
    first = scheduler.schedule_job("update_news", {}, clock() - timedelta(minutes=2))
    second = scheduler.schedule_job("update_top_coins", {}, clock() - timedelta(minutes=1))
    real_claim = repository.claim_job

    def flaky_claim(conn, job_id, now):
        if job_id == first:
            raise StoreWriteError("disk I/O error")
        return real_claim(conn, job_id, now)

    monkeypatch.setattr(repository, "claim_job", flaky_claim)

    assert scheduler.process_pending_jobs() == 1
    assert load(first).status == PENDING
    assert load(second).status == COMPLETED


def test_store_error_on_completion_marks_failed(scheduler, monkeypatch, load):
    job_id = scheduler.schedule_job("update_news", {})

    def broken(conn, job_id, result, now):
        raise StoreWriteError("result too large")

    monkeypatch.setattr(repository, "mark_completed", broken)

    assert scheduler.process_pending_jobs() == 1
    job = load(job_id)
    assert job.status == FAILED
    assert "result too large" in job.error


def test_listing_failure_propagates(scheduler, monkeypatch):
    def broken(conn, now, limit=None):
        raise StoreError("database is locked")

    monkeypatch.setattr(repository, "fetch_due_jobs", broken)

    with pytest.raises(StoreError):
        scheduler.process_pending_jobs()


def test_insert_failure_writes_nothing(scheduler, monkeypatch, row_count):
    class FixedUUID:
        hex = "same-id"

    scheduler.schedule_job("update_news", {})
    monkeypatch.setattr(repository.uuid, "uuid4", lambda: FixedUUID)
    scheduler.schedule_job("update_news", {})

    with pytest.raises(StoreWriteError):
        scheduler.schedule_job("update_news", {})
    assert row_count() == 2


def test_unreachable_store_on_schedule_is_a_write_error(registry, tmp_path, clock):
    sched = JobScheduler(registry, str(tmp_path / "missing" / "jobs.db"), clock=clock)

    with pytest.raises(StoreWriteError):
        sched.schedule_job("update_news", {})

    with pytest.raises(StoreError) as excinfo:
        sched.process_pending_jobs()
    assert excinfo.type is StoreError


def test_recurring_job_schedules_its_next_run(registry, db_path, clock, load):
    sched = JobScheduler(registry, db_path, reschedule_recurring=True, clock=clock)
    first = sched.schedule_job("update_news", {})

    assert sched.process_pending_jobs() == 1

    conn = connect_db(db_path)
    try:
        pending = repository.list_jobs(conn, status=PENDING)
    finally:
        conn.close()
    assert len(pending) == 1
    assert pending[0].id != first
    assert pending[0].type == JobType.UPDATE_NEWS
    assert pending[0].scheduled_for == to_iso(clock() + timedelta(minutes=15))

    assert sched.process_pending_jobs() == 0
    clock.advance(minutes=15)
    assert sched.process_pending_jobs() == 1


def test_failed_recurring_job_still_schedules_next_run(registry, db_path, clock, load):
    registry.register("cache_cleanup", boom)
    sched = JobScheduler(registry, db_path, reschedule_recurring=True, clock=clock)
    first = sched.schedule_job("cache_cleanup", {"source": "coingecko"})

    sched.process_pending_jobs()

    conn = connect_db(db_path)
    try:
        pending = repository.list_jobs(conn, status=PENDING)
    finally:
        conn.close()
    assert load(first).status == FAILED
    assert [j.payload for j in pending] == [{"source": "coingecko"}]


def test_init_recurring_jobs_skips_types_already_pending(scheduler):
    scheduler.schedule_job("update_news", {})

    scheduled = scheduler.init_recurring_jobs()

    assert set(scheduled) == set(JobType) - {JobType.UPDATE_NEWS}
    assert scheduler.init_recurring_jobs() == {}
