from __future__ import annotations

import allure
import pytest

from sunrunctl.credits import CreditLedgerClient
from sunrunctl.errors import StoreUnavailableError, UpstreamError, ValidationError
from sunrunctl.jobs import JobStoreClient
from sunrunctl.models import JobPayload, JobStatus
from sunrunctl.storage import SqliteCreditTable, SqliteJobTable
from sunrunctl.worker import CycleOutcome, Worker, WorkerContext

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Job Lifecycle"),
]

POLLING = 15.0


class Executor:
    """Scripted stand-in for the execution engine: raises or returns per call."""

    def __init__(self, *outcomes, on_call=None):
        self.outcomes = list(outcomes)
        self.payloads: list[JobPayload] = []
        self.on_call = on_call

    def __call__(self, payload: JobPayload) -> str:
        self.payloads.append(payload)
        if self.on_call:
            self.on_call(payload)
        outcome = self.outcomes.pop(0) if self.outcomes else "submitted run"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _worker(jobs, ledger, execute, *, max_attempts=3, rate_limit=0.0, sleeps=None) -> Worker:
    sleeps = [] if sleeps is None else sleeps
    return Worker(
        WorkerContext(
            worker_id="test-worker",
            jobs=jobs,
            credits=ledger,
            execute=execute,
            max_attempts=max_attempts,
            polling_delay=POLLING,
            rate_limit_delay=rate_limit,
            sleep=sleeps.append,
        )
    )


def test_successful_job(jobs, ledger, job_table, payload) -> None:
    job = jobs.enqueue(payload)
    worker = _worker(jobs, ledger, Executor("submitted run: distance 0.51 km"))

    assert worker.run_once() is CycleOutcome.PROCESSED

    row = job_table.get(job.id)
    assert row["status"] == "SUCCESS"
    assert row["result_log"] == "submitted run: distance 0.51 km"
    assert row["user_data"]["retryCount"] == 1
    assert row["user_data"]["runPoint"]["taskId"] == "task-3"


def test_job_is_processing_while_it_executes(jobs, ledger, job_table, payload) -> None:
    job = jobs.enqueue(payload)
    seen = []
    execute = Executor(on_call=lambda p: seen.append(job_table.get(job.id)["status"]))
    _worker(jobs, ledger, execute).run_once()
    assert seen == ["PROCESSING"]


def test_three_failures_exhaust_the_job(jobs, ledger, job_table, payload) -> None:
    job = jobs.enqueue(payload)
    error = UpstreamError(502, "bad gateway", "sunrun/getRunBegin")
    execute = Executor(error, error, error, error)
    worker = _worker(jobs, ledger, execute, max_attempts=3)

    statuses, counts = [], []
    for _ in range(3):
        assert worker.run_once() is CycleOutcome.PROCESSED
        row = job_table.get(job.id)
        statuses.append(row["status"])
        counts.append(row["user_data"]["retryCount"])

    assert statuses == ["PENDING", "PENDING", "FAILED"]
    assert counts == [1, 2, 3]
    assert len(execute.payloads) == 3
    assert job_table.get(job.id)["result_log"].startswith("attempt 3 failed: upstream sunrun/getRunBegin returned 502")
    assert worker.run_once() is CycleOutcome.IDLE
    assert job_table.get(job.id)["user_data"]["retryCount"] == 3


def test_requeued_job_keeps_attempt_numbered_log(jobs, ledger, job_table, payload) -> None:
    job = jobs.enqueue(payload)
    _worker(jobs, ledger, Executor(RuntimeError("connection reset"))).run_once()
    row = job_table.get(job.id)
    assert row["status"] == "PENDING"
    assert row["result_log"] == "attempt 1 failed: connection reset"


def test_validation_error_fails_without_retry(jobs, ledger, job_table, payload) -> None:
    job = jobs.enqueue(payload)
    execute = Executor(ValidationError("job payload is missing session or runPoint"))
    _worker(jobs, ledger, execute).run_once()

    row = job_table.get(job.id)
    assert row["status"] == "FAILED"
    assert row["user_data"]["retryCount"] == 1
    assert row["result_log"] == "attempt 1 failed: job payload is missing session or runPoint"


def test_unreadable_payload_fails_fast(jobs, ledger, job_table, payload) -> None:
    payload["reservedCredit"] = {"not": "a flag"}
    job = jobs.enqueue(payload)
    execute = Executor()
    _worker(jobs, ledger, execute).run_once()

    row = job_table.get(job.id)
    assert row["status"] == "FAILED"
    assert row["result_log"].startswith("attempt 1 failed: invalid job payload")
    assert execute.payloads == []


@pytest.mark.parametrize("stored", ["null", "[1, 2]", "not json"])
def test_non_object_user_data_fails_without_blocking_the_queue(jobs, ledger, job_table, payload, stored) -> None:
    conn = job_table.get_conn()
    with conn:
        cur = conn.execute(
            "INSERT INTO Tasks(status,user_data,created_at,updated_at) VALUES('PENDING',?,'2026-10-19','2026-10-19')",
            (stored,),
        )
    bad_id = cur.lastrowid
    good = jobs.enqueue(payload)
    execute = Executor()
    _worker(jobs, ledger, execute).run(max_cycles=2)

    bad = job_table.get(bad_id)
    assert bad["status"] == "FAILED"
    assert bad["result_log"] == "attempt 1 failed: invalid job payload: user_data is not an object"
    assert bad["user_data"] == {"retryCount": 1}
    assert job_table.get(good.id)["status"] == "SUCCESS"
    assert len(execute.payloads) == 1


def test_backfill_retry_consumes_one_credit(jobs, ledger, job_table, backfill_payload) -> None:
    ledger.grant("2023001", 2)
    job = jobs.enqueue(backfill_payload)
    reserved_before_run = []
    execute = Executor(
        UpstreamError(None, "ConnectError: timed out"),
        "submitted run",
        on_call=lambda p: reserved_before_run.append(job_table.get(job.id)["user_data"].get("reservedCredit")),
    )
    worker = _worker(jobs, ledger, execute)

    worker.run_once()
    assert job_table.get(job.id)["status"] == "PENDING"
    worker.run_once()

    row = job_table.get(job.id)
    assert row["status"] == "SUCCESS"
    assert row["user_data"]["retryCount"] == 2
    assert reserved_before_run == [True, True]
    assert ledger.balance("2023001") == 1


def test_exhausted_backfill_refunds_its_credit(jobs, ledger, job_table, backfill_payload) -> None:
    ledger.grant("2023001", 1)
    job = jobs.enqueue(backfill_payload)
    error = UpstreamError(500, "server error")
    worker = _worker(jobs, ledger, Executor(error, error, error))

    balances = []
    for _ in range(3):
        worker.run_once()
        balances.append(ledger.balance("2023001"))

    row = job_table.get(job.id)
    assert row["status"] == "FAILED"
    assert balances == [0, 0, 1]
    assert row["user_data"]["reservedCredit"] is False


def test_non_retryable_failure_after_reservation_refunds(jobs, ledger, job_table, backfill_payload) -> None:
    ledger.grant("2023001", 1)
    job = jobs.enqueue(backfill_payload)
    _worker(jobs, ledger, Executor(ValidationError("bad route"))).run_once()

    assert job_table.get(job.id)["status"] == "FAILED"
    assert ledger.balance("2023001") == 1


def test_insufficient_credit_fails_without_executing(jobs, ledger, job_table, backfill_payload) -> None:
    job = jobs.enqueue(backfill_payload)
    execute = Executor()
    _worker(jobs, ledger, execute).run_once()

    row = job_table.get(job.id)
    assert row["status"] == "FAILED"
    assert row["user_data"]["retryCount"] == 1
    assert "insufficient backfill credits" in row["result_log"]
    assert execute.payloads == []
    assert ledger.balance("2023001") == 0


def test_live_jobs_never_touch_credits(jobs, ledger, credit_table, payload) -> None:
    jobs.enqueue(payload)
    _worker(jobs, ledger, Executor()).run_once()
    assert credit_table.get("2023001") is None


def test_refund_failure_does_not_block_terminal_state(jobs, job_table, db_path, backfill_payload) -> None:
    class RefundDown(SqliteCreditTable):
        def upsert(self, user_id, credits):
            raise RuntimeError("ledger offline")

    ledger = CreditLedgerClient(RefundDown(db_path))
    ledger.table.insert("2023001", 1)
    job = jobs.enqueue(backfill_payload)
    _worker(jobs, ledger, Executor(ValidationError("bad route"))).run_once()

    row = job_table.get(job.id)
    assert row["status"] == "FAILED"
    assert row["user_data"]["reservedCredit"] is True


def test_corrupt_ledger_row_does_not_block_terminal_state(jobs, ledger, credit_table, job_table, backfill_payload) -> None:
    credit_table.insert("2023001", -1)
    backfill_payload["reservedCredit"] = True
    job = jobs.enqueue(backfill_payload)
    _worker(jobs, ledger, Executor(ValidationError("bad route"))).run_once()

    row = job_table.get(job.id)
    assert row["status"] == "FAILED"
    assert row["user_data"]["reservedCredit"] is True
    with pytest.raises(StoreUnavailableError):
        ledger.balance("2023001")


def test_finalize_failure_is_logged_not_raised(db_path, ledger, payload, caplog) -> None:
    class FinalizeDown(SqliteJobTable):
        def update(self, job_id, fields):
            raise RuntimeError("write timeout")

    jobs = JobStoreClient(FinalizeDown(db_path))
    job = jobs.enqueue(payload)
    worker = _worker(jobs, ledger, Executor())

    assert worker.run_once() is CycleOutcome.PROCESSED
    assert jobs.table.get(job.id)["status"] == "PROCESSING"
    assert "could not mark job" in caplog.text


def test_lost_race_is_contended_without_side_effects(db_path, ledger, payload) -> None:
    class StaleListing(SqliteJobTable):
        """Keeps offering the rows it saw first, as a slow reader would."""

        snapshot = None

        def list_pending(self, status, order_by="id", limit=1):
            if self.snapshot is None:
                self.snapshot = super().list_pending(status, order_by, limit)
            return self.snapshot

    table = StaleListing(db_path)
    slow = JobStoreClient(table, "slow")
    fast = JobStoreClient(SqliteJobTable(db_path), "fast")
    job = slow.enqueue(payload)
    assert slow.list_one_pending().id == job.id
    fast.try_lock(fast.list_one_pending())

    execute = Executor()
    sleeps: list[float] = []
    worker = _worker(slow, ledger, execute, sleeps=sleeps)
    worker.run(max_cycles=1)

    assert execute.payloads == []
    assert sleeps == []
    row = table.get(job.id)
    assert row["status"] == "PROCESSING"
    assert row["user_data"] == payload


def test_idle_cycles_sleep_polling_delay(jobs, ledger) -> None:
    sleeps: list[float] = []
    _worker(jobs, ledger, Executor(), sleeps=sleeps).run(max_cycles=2)
    assert sleeps == [POLLING, POLLING]


def test_processed_job_sleeps_rate_limit(jobs, ledger, payload) -> None:
    jobs.enqueue(payload)
    sleeps: list[float] = []
    _worker(jobs, ledger, Executor(), rate_limit=0.5, sleeps=sleeps).run(max_cycles=2)
    assert sleeps == [0.5, POLLING]


def test_zero_rate_limit_skips_sleep(jobs, ledger, payload) -> None:
    jobs.enqueue(payload)
    jobs.enqueue(payload)
    sleeps: list[float] = []
    _worker(jobs, ledger, Executor(), sleeps=sleeps).run(max_cycles=2)
    assert sleeps == []


def test_store_outage_counts_as_idle(ledger) -> None:
    class Down:
        def list_one_pending(self):
            raise StoreUnavailableError("list pending failed: connection refused")

    worker = _worker(Down(), ledger, Executor())
    assert worker.run_once() is CycleOutcome.IDLE


def test_unexpected_loop_error_is_guarded(ledger, caplog) -> None:
    class Broken:
        def list_one_pending(self):
            raise KeyError("user_data")

    sleeps: list[float] = []
    _worker(Broken(), ledger, Executor(), sleeps=sleeps).run(max_cycles=2)
    assert sleeps == [POLLING, POLLING]
    assert "main loop error" in caplog.text


@pytest.mark.parametrize("max_attempts", [1, 2])
def test_max_attempts_bounds_retries(jobs, ledger, job_table, payload, max_attempts) -> None:
    job = jobs.enqueue(payload)
    worker = _worker(jobs, ledger, Executor(*[RuntimeError("boom")] * 5), max_attempts=max_attempts)
    while worker.run_once() is CycleOutcome.PROCESSED:
        pass
    row = job_table.get(job.id)
    assert row["status"] == "FAILED"
    assert row["user_data"]["retryCount"] == max_attempts
