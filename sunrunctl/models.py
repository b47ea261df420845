from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class _Payload(BaseModel):
    # producers write camelCase keys and may add fields we do not model
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)


class Session(_Payload):
    stu_number: Optional[str] = Field(default=None, alias="stuNumber")
    school_id: Optional[str] = Field(default=None, alias="schoolId")
    campus_id: Optional[str] = Field(default=None, alias="campusId")
    token: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")


class RoutePoint(_Payload):
    longitude: Optional[Any] = None
    latitude: Optional[Any] = None


class RunPoint(_Payload):
    point_id: Optional[str] = Field(default=None, alias="pointId")
    task_id: Optional[str] = Field(default=None, alias="taskId")
    point_list: List[RoutePoint] = Field(default_factory=list, alias="pointList")


class JobPayload(_Payload):
    session: Optional[Session] = None
    run_point: Optional[RunPoint] = Field(default=None, alias="runPoint")
    mileage: Optional[float] = None
    min_time: Optional[float] = Field(default=None, alias="minTime")
    max_time: Optional[float] = Field(default=None, alias="maxTime")
    custom_end_time: Optional[str] = Field(default=None, alias="customEndTime")
    start_date: Optional[str] = Field(default=None, alias="startDate")
    custom_date: Optional[Any] = Field(default=None, alias="customDate")
    custom_period: Optional[Any] = Field(default=None, alias="customPeriod")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    reserved_credit: bool = Field(default=False, alias="reservedCredit")

    @property
    def is_backfill(self) -> bool:
        return bool(self.custom_date or self.custom_period)

    @property
    def user_id(self) -> Optional[str]:
        return self.session.stu_number if self.session else None

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


class Job(BaseModel):
    id: int
    status: JobStatus = JobStatus.PENDING
    # normally an object; anything else is kept so the worker can fail the job
    user_data: Any = Field(default_factory=dict)
    result_log: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Job":
        return cls.model_validate(dict(row))


class CreditEntry(BaseModel):
    user_id: str
    credits: int = Field(default=0, ge=0)
    updated_at: Optional[datetime] = None


DEFAULTS = {
    "polling_delay_ms": 15000,
    "rate_limit_delay_ms": 0,
    "max_attempts": 3,
}
