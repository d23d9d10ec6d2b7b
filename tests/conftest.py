from datetime import datetime, timedelta, timezone

import pytest

from jobsctl.db import connect_db, init_db
from jobsctl.models import JobType
from jobsctl.registry import HandlerRegistry
from jobsctl.repository import get_job
from jobsctl.scheduler import JobScheduler


class Clock:
    """Settable stand-in for utc_now."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "jobs.db")
    init_db(path)
    return path


@pytest.fixture
def clock():
    return Clock(datetime(2025, 3, 17, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def calls():
    return []


@pytest.fixture
def registry(calls):
    def make(job_type):
        def handler(payload):
            calls.append((job_type, payload))
            return {"ok": True}
        return handler

    return HandlerRegistry({jt: make(jt) for jt in JobType})


@pytest.fixture
def scheduler(registry, db_path, clock):
    return JobScheduler(registry, db_path, reschedule_recurring=False, timeout_seconds=5, clock=clock)


@pytest.fixture
def load(db_path):
    def _load(job_id):
        conn = connect_db(db_path)
        try:
            return get_job(conn, job_id)
        finally:
            conn.close()
    return _load


@pytest.fixture
def row_count(db_path):
    def _count():
        conn = connect_db(db_path)
        try:
            return conn.execute("SELECT COUNT(1) AS c FROM background_jobs").fetchone()["c"]
        finally:
            conn.close()
    return _count
