"""Queue access for workers: find, lock and finalize jobs."""
import logging
from typing import Any, Dict, List, Optional, Protocol

from .errors import StoreUnavailableError
from .models import Job, JobStatus

logger = logging.getLogger(__name__)


class JobTable(Protocol):
    def list_pending(self, status: str, order_by: str = "id", limit: int = 1) -> List[Dict[str, Any]]: ...

    def conditional_update(self, job_id: int, expected_status: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def update(self, job_id: int, fields: Dict[str, Any]) -> None: ...

    def get(self, job_id: int) -> Optional[Dict[str, Any]]: ...

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]: ...


class JobStoreClient:
    def __init__(self, table: JobTable, worker_id: str = ""):
        self.table = table
        self.worker_id = worker_id

    def _call(self, what: str, fn, *args):
        try:
            return fn(*args)
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise StoreUnavailableError(f"{what} failed: {e}") from e

    def list_one_pending(self) -> Optional[Job]:
        """Oldest PENDING job by id, or None."""
        rows = self._call("list pending", self.table.list_pending, JobStatus.PENDING.value, "id", 1)
        return Job.from_row(rows[0]) if rows else None

    def try_lock(self, job: Job) -> Optional[Job]:
        """
        Compare-and-swap PENDING -> PROCESSING. Returns the locked row, or None
        when another worker changed the status first.
        """
        row = self._call(
            "lock",
            self.table.conditional_update,
            job.id,
            JobStatus.PENDING.value,
            {"status": JobStatus.PROCESSING.value, "result_log": None},
        )
        if row is not None:
            return Job.from_row(row)

        try:
            current = self.table.get(job.id)
        except Exception as e:
            current = None
            logger.debug("[%s] status re-read for job %s failed: %s", self.worker_id, job.id, e)
        status = current["status"] if current else "unknown"
        logger.info("[%s] job %s could not be locked (status now %s)", self.worker_id, job.id, status)
        return None

    def save_payload(self, job: Job, payload: Dict[str, Any]):
        self._call("payload update", self.table.update, job.id, {"user_data": payload})
        job.user_data = payload

    def finalize(self, job: Job, status: JobStatus, result_log: Optional[str], payload: Dict[str, Any]):
        self._call(
            "finalize",
            self.table.update,
            job.id,
            {"status": status.value, "result_log": result_log, "user_data": payload},
        )

    def enqueue(self, payload: Dict[str, Any]) -> Job:
        row = self._call(
            "enqueue",
            self.table.insert,
            {"status": JobStatus.PENDING.value, "user_data": payload, "result_log": None},
        )
        return Job.from_row(row)
