"""Shared test fixtures."""

from __future__ import annotations

import copy
from datetime import datetime
from pathlib import Path

import pytest

from sunrunctl.credits import CreditLedgerClient
from sunrunctl.jobs import JobStoreClient
from sunrunctl.storage import SqliteCreditTable, SqliteJobTable
from sunrunctl.utils import LOCAL_TZ

# Two waypoints roughly 1 km apart along a meridian.
ONE_KM_ROUTE = [
    {"longitude": 116.3, "latitude": 39.9},
    {"longitude": 116.3, "latitude": 39.909},
]

_PAYLOAD = {
    "session": {
        "stuNumber": "2023001",
        "schoolId": "school-1",
        "campusId": "campus-1",
        "token": "token-abc",
        "phoneNumber": "13800000000",
    },
    "runPoint": {"pointId": "route-7", "taskId": "task-3", "pointList": ONE_KM_ROUTE},
    "mileage": 0.5,
    "minTime": 10,
    "maxTime": 20,
}


@pytest.fixture()
def payload() -> dict:
    return copy.deepcopy(_PAYLOAD)


@pytest.fixture()
def backfill_payload(payload: dict) -> dict:
    payload["customDate"] = "2026-10-18"
    payload["customEndTime"] = "2026-10-18 07:30"
    return payload


@pytest.fixture()
def local_now() -> datetime:
    return datetime(2026, 10, 19, 20, 0, 0, tzinfo=LOCAL_TZ)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def job_table(db_path: Path) -> SqliteJobTable:
    table = SqliteJobTable(db_path)
    yield table
    table.close()


@pytest.fixture()
def credit_table(db_path: Path) -> SqliteCreditTable:
    table = SqliteCreditTable(db_path)
    yield table
    table.close()


@pytest.fixture()
def jobs(job_table: SqliteJobTable) -> JobStoreClient:
    return JobStoreClient(job_table, "test-worker")


@pytest.fixture()
def ledger(credit_table: SqliteCreditTable) -> CreditLedgerClient:
    return CreditLedgerClient(credit_table)
