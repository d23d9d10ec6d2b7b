import json
import sqlite3
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .config import ALLOWED_CONFIG_KEYS, MIN_CONFIG_VALUES
from .errors import StoreError, StoreWriteError
from .models import PENDING, PROCESSING, COMPLETED, FAILED, STATUSES, TERMINAL_STATUSES, Job, JobType

# Longest error text kept on a failed row.
MAX_ERROR_LENGTH = 500


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    minimum = MIN_CONFIG_VALUES.get(key, 0)
    try:
        if int(value) < minimum:
            raise ValueError
    except ValueError:
        raise ValueError(f"{key} must be an integer >= {minimum}.")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(int(value))),
        )


# ---------- Jobs: insert / claim / outcome ----------
def insert_job(conn, *, job_type: str, payload: Dict[str, Any], scheduled_for: str, now: str) -> str:
    job_id = uuid.uuid4().hex
    try:
        with conn:
            conn.execute(
                """INSERT INTO background_jobs
                   (id, job_type, status, payload, created_at, updated_at, scheduled_for)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (job_id, job_type, PENDING, json.dumps(payload), now, now, scheduled_for),
            )
    except sqlite3.Error as e:
        raise StoreWriteError(f"DB error while inserting job: {e}")
    return job_id


def fetch_due_jobs(conn, now: str, limit: Optional[int] = None) -> List[sqlite3.Row]:
    sql = """SELECT * FROM background_jobs
             WHERE status=? AND scheduled_for <= ?
             ORDER BY scheduled_for ASC"""
    params = [PENDING, now]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    try:
        return conn.execute(sql, params).fetchall()
    except sqlite3.Error as e:
        raise StoreError(f"DB error while listing due jobs: {e}")


def claim_job(conn, job_id: str, now: str) -> bool:
    """Move one job from pending to processing.

    The status guard makes this a compare-and-swap: when two callers race for
    the same row only one update matches, the other sees rowcount 0 and gets
    False back.
    """
    try:
        with conn:
            cur = conn.execute(
                "UPDATE background_jobs SET status=?, updated_at=? WHERE id=? AND status=?",
                (PROCESSING, now, job_id, PENDING),
            )
    except sqlite3.Error as e:
        raise StoreWriteError(f"DB error while claiming job {job_id}: {e}")
    return cur.rowcount == 1


def mark_completed(conn, job_id: str, result: Any, now: str) -> bool:
    try:
        with conn:
            cur = conn.execute(
                """UPDATE background_jobs
                   SET status=?, result=?, error=NULL, updated_at=?, completed_at=?
                   WHERE id=? AND status=?""",
                (COMPLETED, json.dumps(result, default=str), now, now, job_id, PROCESSING),
            )
    except (sqlite3.Error, TypeError, ValueError) as e:
        raise StoreWriteError(f"DB error while completing job {job_id}: {e}")
    return cur.rowcount == 1


def mark_failed(conn, job_id: str, error: str, now: str) -> bool:
    try:
        with conn:
            cur = conn.execute(
                """UPDATE background_jobs
                   SET status=?, error=?, updated_at=?, completed_at=?
                   WHERE id=? AND status=?""",
                (FAILED, (error or "unknown error")[:MAX_ERROR_LENGTH], now, now, job_id, PROCESSING),
            )
    except sqlite3.Error as e:
        raise StoreWriteError(f"DB error while failing job {job_id}: {e}")
    return cur.rowcount == 1


# ---------- Queries ----------
def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM background_jobs WHERE id=?", (job_id,)).fetchone()
    return row_to_job(row) if row else None


def list_jobs(
    conn,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    limit: Optional[int] = None,
) -> Iterable[Job]:
    sql = "SELECT * FROM background_jobs"
    clauses, params = [], []
    if status:
        clauses.append("status=?")
        params.append(status)
    if job_type:
        clauses.append("job_type=?")
        params.append(job_type)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at DESC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [row_to_job(r) for r in conn.execute(sql, params).fetchall()]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in STATUSES}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM background_jobs GROUP BY status"):
        out[r["status"]] = r["c"]
    return out


def pending_counts_by_type(conn) -> Dict[str, int]:
    cur = conn.execute(
        "SELECT job_type, COUNT(1) AS c FROM background_jobs WHERE status=? GROUP BY job_type",
        (PENDING,),
    )
    return {r["job_type"]: r["c"] for r in cur.fetchall()}


def purge_finished(conn, before: str) -> int:
    """Delete completed/failed rows last touched before `before`."""
    try:
        with conn:
            cur = conn.execute(
                "DELETE FROM background_jobs WHERE status IN (?, ?) AND updated_at < ?",
                (*TERMINAL_STATUSES, before),
            )
    except sqlite3.Error as e:
        raise StoreWriteError(f"DB error while purging jobs: {e}")
    return cur.rowcount


def row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        type=_job_type(row["job_type"]),
        payload=json.loads(row["payload"] or "{}"),
        status=row["status"],
        scheduled_for=row["scheduled_for"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        result=json.loads(row["result"]) if row["result"] is not None else None,
        error=row["error"],
        completed_at=row["completed_at"],
    )


def _job_type(value: str):
    # Rows written by a newer release may carry a type this one does not know.
    try:
        return JobType(value)
    except ValueError:
        return value
