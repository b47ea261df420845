"""Supabase-backed Tasks and backfill_run_credits tables."""
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client, create_client

from .models import JobStatus
from .utils import utcnow

TASKS_TABLE = "Tasks"
CREDITS_TABLE = "backfill_run_credits"
_TASK_FIELDS = "id, status, user_data, result_log"


def connect(url: str, service_key: str) -> Client:
    if not url or not service_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
    return create_client(url, service_key)


class SupabaseJobTable:
    def __init__(self, client: Client):
        self._client = client

    def list_pending(self, status: str, order_by: str = "id", limit: int = 1) -> List[Dict[str, Any]]:
        response = (
            self._client.table(TASKS_TABLE)
            .select(_TASK_FIELDS)
            .eq("status", status)
            .order(order_by, desc=False)
            .limit(limit)
            .execute()
        )
        return response.data or []

    def conditional_update(self, job_id: int, expected_status: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        # PostgREST applies the filter and the write in one UPDATE statement
        response = (
            self._client.table(TASKS_TABLE)
            .update(fields)
            .eq("id", job_id)
            .eq("status", expected_status)
            .execute()
        )
        return response.data[0] if response.data else None

    def update(self, job_id: int, fields: Dict[str, Any]):
        self._client.table(TASKS_TABLE).update(fields).eq("id", job_id).execute()

    def get(self, job_id: int) -> Optional[Dict[str, Any]]:
        response = self._client.table(TASKS_TABLE).select(_TASK_FIELDS).eq("id", job_id).limit(1).execute()
        return response.data[0] if response.data else None

    def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.table(TASKS_TABLE).insert(fields).execute()
        return response.data[0]

    def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = self._client.table(TASKS_TABLE).select(_TASK_FIELDS)
        if status:
            query = query.eq("status", status)
        return query.order("id", desc=False).limit(limit).execute().data or []

    def counts_by_status(self) -> List[Tuple[str, int]]:
        counts = []
        for status in JobStatus:
            response = (
                self._client.table(TASKS_TABLE)
                .select("id", count="exact")
                .eq("status", status.value)
                .limit(1)
                .execute()
            )
            if response.count:
                counts.append((status.value, response.count))
        return counts


class SupabaseCreditTable:
    def __init__(self, client: Client):
        self._client = client

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        response = (
            self._client.table(CREDITS_TABLE)
            .select("user_id, credits, updated_at")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def insert(self, user_id: str, credits: int):
        self._client.table(CREDITS_TABLE).insert({"user_id": user_id, "credits": credits}).execute()

    def update(self, user_id: str, credits: int):
        self._client.table(CREDITS_TABLE).update(
            {"credits": credits, "updated_at": utcnow().isoformat()}
        ).eq("user_id", user_id).execute()

    def upsert(self, user_id: str, credits: int):
        self._client.table(CREDITS_TABLE).upsert(
            {"user_id": user_id, "credits": credits, "updated_at": utcnow().isoformat()}
        ).execute()
