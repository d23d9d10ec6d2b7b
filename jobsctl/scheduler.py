import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from . import repository
from .config import DEFAULT_CONFIG, RECURRING_INTERVALS
from .db import connect_db
from .errors import HandlerError, HandlerTimeout, InvalidPayload, StoreError, StoreWriteError
from .models import PAYLOAD_MODELS, JobType
from .registry import HandlerRegistry
from .utils import parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)


def validate_payload(job_type: JobType, payload) -> Dict[str, Any]:
    """Check `payload` against the model registered for `job_type`.

    Returns the fields the caller actually set, so the stored payload matches
    what was scheduled; handlers fill in defaults when they parse it again.
    """
    if payload is None:
        payload = {}
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    if not isinstance(payload, dict):
        raise InvalidPayload(f"Payload for {job_type.value} must be an object, got {type(payload).__name__}")
    try:
        model = PAYLOAD_MODELS[job_type].model_validate(payload)
    except ValidationError as e:
        raise InvalidPayload(f"Invalid payload for {job_type.value}: {e}")
    return model.model_dump(mode="json", exclude_unset=True)


def run_with_timeout(fn: Callable, payload: Dict[str, Any], job_type: JobType, timeout: Optional[float]):
    """Call `fn(payload)`, giving up after `timeout` seconds.

    The handler runs on a daemon thread. Python cannot kill a thread, so on
    expiry the call is abandoned: its eventual result or exception is dropped.
    A handler raising SystemExit or another BaseException surfaces as
    HandlerError.
    """
    if not timeout:
        try:
            return fn(payload)
        except (KeyboardInterrupt, Exception):
            raise
        except BaseException as e:
            raise _as_handler_error(job_type, e) from e

    outcome = {}

    def _target():
        try:
            outcome["result"] = fn(payload)
        except BaseException as e:
            outcome["error"] = e

    t = threading.Thread(target=_target, name=f"job-{job_type.value}", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        raise HandlerTimeout(job_type.value, timeout)
    if "error" in outcome:
        e = outcome["error"]
        if isinstance(e, Exception):
            raise e
        raise _as_handler_error(job_type, e) from e
    return outcome.get("result")


def _as_handler_error(job_type: JobType, exc: BaseException) -> HandlerError:
    # SystemExit and other non-Exception raises fail the job like any error.
    return HandlerError(f"Handler for {job_type.value} raised {exc.__class__.__name__}: {exc}")


def _describe(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


class JobScheduler:
    """Schedules jobs into the store and runs the ones that are due.

    Holds no state between calls: every operation opens its own connection,
    so any number of processes (cron runs, CLI invocations) can share a
    database. The only coordination is the conditional claim in
    ``repository.claim_job``.

    ``batch_size``, ``timeout_seconds`` and ``reschedule_recurring`` override
    the values stored in the ``config`` table.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        db_path: Optional[str] = None,
        *,
        batch_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        reschedule_recurring: Optional[bool] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.db_path = db_path
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds
        self.reschedule_recurring = reschedule_recurring
        self.clock = clock

    def _connect(self, error_cls=StoreError):
        try:
            return connect_db(self.db_path)
        except sqlite3.Error as e:
            raise error_cls(f"Could not open job store: {e}")

    def _options(self, conn) -> Dict[str, Any]:
        try:
            cfg = {**DEFAULT_CONFIG, **repository.get_config(conn)}
        except sqlite3.Error as e:
            raise StoreError(f"Could not read config: {e}")
        return {
            "batch_size": self.batch_size if self.batch_size is not None else int(cfg["batch_size"]),
            "timeout_seconds": (
                self.timeout_seconds if self.timeout_seconds is not None else int(cfg["timeout_seconds"])
            ),
            "reschedule_recurring": (
                self.reschedule_recurring
                if self.reschedule_recurring is not None
                else cfg["reschedule_recurring"] == "1"
            ),
        }

    # ---------- schedule ----------
    def schedule_job(
        self,
        job_type: Union[JobType, str],
        payload: Any = None,
        scheduled_for: Union[datetime, str, None] = None,
    ) -> str:
        """Insert one pending job and return its id.

        Raises InvalidJobType for an unknown type (or one without a handler),
        InvalidPayload when the payload does not fit the type, and
        StoreWriteError when the insert fails. No row is written in any of
        those cases.
        """
        jt = self.registry.require(job_type)
        data = validate_payload(jt, payload)

        now = self.clock()
        if scheduled_for is None:
            run_at = now
        elif isinstance(scheduled_for, str):
            run_at = parse_iso(scheduled_for)
        else:
            run_at = scheduled_for

        conn = self._connect(StoreWriteError)
        try:
            job_id = repository.insert_job(
                conn,
                job_type=jt.value,
                payload=data,
                scheduled_for=to_iso(run_at),
                now=to_iso(now),
            )
        finally:
            conn.close()

        log.info("Scheduled job %s (%s) for %s", job_id, jt.value, to_iso(run_at))
        return job_id

    # ---------- process ----------
    def process_pending_jobs(self) -> int:
        """Claim and run every due job, oldest first, up to the batch size.

        Returns how many jobs were claimed by this call, whatever their
        outcome. Failures of a single job are recorded on its row and never
        raised; only a failure to list due jobs propagates (as StoreError).
        """
        conn = self._connect()
        try:
            opts = self._options(conn)
            due = repository.fetch_due_jobs(conn, to_iso(self.clock()), limit=opts["batch_size"])
            if not due:
                log.debug("No due jobs")
                return 0

            processed = 0
            for row in due:
                if self._process_row(conn, row, opts):
                    processed += 1
        finally:
            conn.close()

        log.info("Processed %d of %d due job(s)", processed, len(due))
        return processed

    def _process_row(self, conn, row, opts) -> bool:
        job_id = row["id"]
        job_type = row["job_type"]

        try:
            claimed = repository.claim_job(conn, job_id, to_iso(self.clock()))
        except StoreWriteError as e:
            log.error("Could not claim job %s (%s): %s", job_id, job_type, e)
            return False
        if not claimed:
            log.info("Job %s already claimed elsewhere, skipping", job_id)
            return False

        log.info("Executing job %s (%s)", job_id, job_type)
        payload = {}
        try:
            handler = self.registry.get(job_type)
            payload = json.loads(row["payload"] or "{}")
            result = run_with_timeout(handler, payload, JobType(job_type), opts["timeout_seconds"])
        except Exception as e:
            log.error("Job %s (%s) failed: %s", job_id, job_type, _describe(e))
            self._record_failure(conn, job_id, _describe(e))
        else:
            try:
                repository.mark_completed(conn, job_id, result, to_iso(self.clock()))
                log.info("Job %s (%s) completed", job_id, job_type)
            except StoreWriteError as e:
                log.error("Job %s (%s) ran but its result could not be stored: %s", job_id, job_type, e)
                self._record_failure(conn, job_id, _describe(e))

        if opts["reschedule_recurring"]:
            self._schedule_next_run(job_type, payload)
        return True

    def _record_failure(self, conn, job_id: str, error: str) -> None:
        try:
            repository.mark_failed(conn, job_id, error, to_iso(self.clock()))
        except StoreWriteError as e:
            # Row stays in processing.
            log.error("Could not mark job %s as failed: %s", job_id, e)

    def _schedule_next_run(self, job_type: str, payload: Dict[str, Any]) -> Optional[str]:
        try:
            jt = JobType(job_type)
        except ValueError:
            return None
        minutes = RECURRING_INTERVALS.get(jt)
        if not minutes or jt not in self.registry:
            return None
        try:
            return self.schedule_job(jt, payload, self.clock() + timedelta(minutes=minutes))
        except (StoreError, InvalidPayload) as e:
            log.error("Could not schedule next run of %s: %s", jt.value, e)
            return None

    # ---------- seeding ----------
    def init_recurring_jobs(self) -> Dict[JobType, str]:
        """Schedule an immediate run of each recurring type that has nothing pending."""
        conn = self._connect()
        try:
            pending = repository.pending_counts_by_type(conn)
        finally:
            conn.close()

        scheduled = {}
        for jt in RECURRING_INTERVALS:
            if jt not in self.registry or pending.get(jt.value):
                continue
            scheduled[jt] = self.schedule_job(jt, {})
        return scheduled
