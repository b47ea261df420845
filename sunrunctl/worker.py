import functools
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from multiprocessing import Process
from typing import Any, Callable, Dict, Optional, Tuple

import pydantic

from . import executor
from .config import Settings
from .credits import CreditLedgerClient, CreditTable
from .errors import StoreUnavailableError, ValidationError, is_retryable
from .jobs import JobStoreClient, JobTable
from .models import Job, JobPayload, JobStatus
from .upstream import RsaPayloadEncoder, UpstreamClient

logger = logging.getLogger(__name__)


class CycleOutcome(str, Enum):
    IDLE = "idle"  # nothing pending, or the store could not be read
    CONTENDED = "contended"  # another worker locked the job first
    PROCESSED = "processed"


@dataclass
class WorkerContext:
    """Everything one worker needs; built once at startup and passed in."""

    worker_id: str
    jobs: JobStoreClient
    credits: CreditLedgerClient
    execute: Callable[[JobPayload], str]
    max_attempts: int = 3
    polling_delay: float = 15.0
    rate_limit_delay: float = 0.0
    sleep: Callable[[float], None] = time.sleep


def _previous_attempts(user_data: Dict[str, Any]) -> int:
    try:
        return max(0, int(user_data.get("retryCount") or 0))
    except (TypeError, ValueError):
        return 0


class Worker:
    """
    One job at a time:
      - PENDING -> PROCESSING through the store's compare-and-swap
      - reserve a backfill credit once per job, persisted before execution
      - SUCCESS, back to PENDING for another attempt, or FAILED with a refund
    All state lives in the job row; nothing is cached between cycles.
    """

    def __init__(self, context: WorkerContext):
        self.ctx = context

    @property
    def worker_id(self) -> str:
        return self.ctx.worker_id

    def acquire(self) -> Tuple[Optional[Job], CycleOutcome]:
        try:
            job = self.ctx.jobs.list_one_pending()
            if job is None:
                return None, CycleOutcome.IDLE
            locked = self.ctx.jobs.try_lock(job)
        except StoreUnavailableError as e:
            logger.error("[%s] could not fetch a pending job: %s", self.worker_id, e)
            return None, CycleOutcome.IDLE
        if locked is None:
            return None, CycleOutcome.CONTENDED
        return locked, CycleOutcome.PROCESSED

    def process(self, job: Job):
        started = time.monotonic()
        if not isinstance(job.user_data, dict):
            self._fail_unreadable(job, {}, 1, "user_data is not an object")
            return
        raw = dict(job.user_data)
        attempt = _previous_attempts(raw) + 1
        logger.info("[%s] processing job %s (attempt %d)", self.worker_id, job.id, attempt)

        try:
            payload = JobPayload.model_validate(raw)
        except pydantic.ValidationError as e:
            self._fail_unreadable(job, raw, attempt, e.errors()[0]["msg"])
            return

        try:
            self._reserve_credit(job, payload)
            summary = self.ctx.execute(payload)
        except Exception as e:
            self._handle_failure(job, payload, attempt, e, started)
            return

        payload.retry_count = attempt
        self._finalize(job, JobStatus.SUCCESS, summary, payload.dump())
        logger.info(
            "[%s] job %s succeeded in %d ms: %s",
            self.worker_id, job.id, (time.monotonic() - started) * 1000, summary,
        )

    def _fail_unreadable(self, job: Job, raw: Dict[str, Any], attempt: int, reason: str):
        raw["retryCount"] = attempt
        logger.error("[%s] job %s has an unreadable payload, failing it: %s", self.worker_id, job.id, reason)
        self._finalize(job, JobStatus.FAILED, f"attempt {attempt} failed: invalid job payload: {reason}", raw)

    def _reserve_credit(self, job: Job, payload: JobPayload):
        if not payload.is_backfill or payload.reserved_credit:
            return
        user_id = payload.user_id
        if not user_id:
            raise ValidationError("backfill job has no session.stuNumber to charge")
        self.ctx.credits.consume(user_id)
        payload.reserved_credit = True
        try:
            self.ctx.jobs.save_payload(job, payload.dump())
        except StoreUnavailableError as e:
            # finalize writes the flag again with the rest of the payload
            logger.warning("[%s] could not persist reservedCredit for job %s: %s", self.worker_id, job.id, e)

    def _handle_failure(self, job: Job, payload: JobPayload, attempt: int, error: Exception, started: float):
        payload.retry_count = attempt
        message = f"attempt {attempt} failed: {error}"
        retry = is_retryable(error) and attempt < self.ctx.max_attempts

        if retry:
            self._finalize(job, JobStatus.PENDING, message, payload.dump())
            logger.warning("[%s] job %s attempt %d failed, re-queued: %s", self.worker_id, job.id, attempt, error)
            return

        if payload.reserved_credit:
            self._refund(job, payload)
        self._finalize(job, JobStatus.FAILED, message, payload.dump())
        logger.error(
            "[%s] job %s failed after %d ms: %s",
            self.worker_id, job.id, (time.monotonic() - started) * 1000, error,
        )

    def _refund(self, job: Job, payload: JobPayload):
        try:
            self.ctx.credits.refund(payload.user_id)
        except StoreUnavailableError as e:
            logger.error("[%s] credit refund for job %s failed: %s", self.worker_id, job.id, e)
            return
        payload.reserved_credit = False

    def _finalize(self, job: Job, status: JobStatus, result_log: str, user_data: Dict[str, Any]):
        try:
            self.ctx.jobs.finalize(job, status, result_log, user_data)
        except StoreUnavailableError as e:
            logger.error("[%s] could not mark job %s as %s: %s", self.worker_id, job.id, status.value, e)

    def run_once(self) -> CycleOutcome:
        job, outcome = self.acquire()
        if job is not None:
            self.process(job)
        return outcome

    def run(self, max_cycles: Optional[int] = None):
        """Poll forever (or `max_cycles` times); Ctrl+C stops between cycles."""
        logger.info("[%s] started, polling for jobs", self.worker_id)
        cycles = 0
        try:
            while max_cycles is None or cycles < max_cycles:
                cycles += 1
                try:
                    outcome = self.run_once()
                except Exception:
                    logger.exception("[%s] main loop error", self.worker_id)
                    self.ctx.sleep(self.ctx.polling_delay)
                    continue
                if outcome is CycleOutcome.IDLE:
                    self.ctx.sleep(self.ctx.polling_delay)
                elif outcome is CycleOutcome.PROCESSED and self.ctx.rate_limit_delay > 0:
                    self.ctx.sleep(self.ctx.rate_limit_delay)
        except KeyboardInterrupt:
            pass
        logger.info("[%s] stopped", self.worker_id)


def open_tables(settings: Settings) -> Tuple[JobTable, CreditTable]:
    if settings.worker_store == "sqlite":
        from .storage import SqliteCreditTable, SqliteJobTable

        return SqliteJobTable(settings.db_path), SqliteCreditTable(settings.db_path)

    from .supabase_store import SupabaseCreditTable, SupabaseJobTable, connect

    client = connect(settings.supabase_url, settings.supabase_service_key)
    return SupabaseJobTable(client), SupabaseCreditTable(client)


def build_context(settings: Settings, worker_id: Optional[str] = None) -> WorkerContext:
    worker_id = worker_id or settings.worker_id
    job_table, credit_table = open_tables(settings)
    upstream = UpstreamClient(
        settings.upstream_base_url,
        RsaPayloadEncoder.from_pem_file(settings.upstream_rsa_key_path),
        timeout_seconds=settings.upstream_timeout,
    )
    return WorkerContext(
        worker_id=worker_id,
        jobs=JobStoreClient(job_table, worker_id),
        credits=CreditLedgerClient(credit_table),
        execute=functools.partial(executor.execute, upstream=upstream, rng=random.Random()),
        max_attempts=settings.worker_max_attempts,
        polling_delay=settings.polling_delay_seconds,
        rate_limit_delay=settings.rate_limit_delay_seconds,
    )


def worker_main(settings: Settings, worker_id: str):
    Worker(build_context(settings, worker_id)).run()


def start_workers(settings: Settings, count: int):
    """
    Spawn N worker processes and join them. Workers stop when the process
    group receives Ctrl+C; a job in flight is not interrupted cooperatively.
    """
    if count == 1:
        ids = [settings.worker_id]
    else:
        ids = [f"{settings.worker_id}-{n}" for n in range(1, count + 1)]

    procs = []
    for wid in ids:
        p = Process(target=worker_main, args=(settings, wid), daemon=False)
        p.start()
        procs.append(p)

    try:
        for p in procs:
            p.join()
    except KeyboardInterrupt:
        for p in procs:
            p.join()
