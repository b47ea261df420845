"""
Run submission: derive timing and distance for a job, synthesize a trail,
and push the record upstream in three calls (begin, exercise, detail).
"""
import hashlib
import json
import logging
import math
import random
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol, Union

import pydantic

from .errors import TemporalOrderError, UpstreamError, ValidationError
from .geo import format_duration, normal_sample
from .models import JobPayload
from .route import synthesize
from .utils import LOCAL_TZ, localnow

logger = logging.getLogger(__name__)

ENERGY_PER_KM = 67.34
APP_VERSION = "1.2.14"
PHONE_INFO = "$CN11/iPhone15,4/17.4.1"

BEGIN_PATH = "sunrun/getRunBegin"
EXERCISE_PATH = "platform/recrecord/sunRunExercises"
DETAIL_PATH = "platform/recrecord/sunRunExercisesDetail"

_MINUTE_PRECISION = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}$")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class Submitter(Protocol):
    def submit(self, path: str, payload: Dict[str, Any], *, encrypted: bool = True) -> Dict[str, Any]: ...


@dataclass
class RunRequest:
    req: Dict[str, Any]
    adjusted_km: float
    duration_seconds: int
    start: datetime
    end: datetime
    is_backfill: bool


def _as_local(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(LOCAL_TZ)


def parse_end_time(value: Optional[str]) -> Optional[datetime]:
    """`YYYY-MM-DD HH:MM[:SS]` with optional offset; no offset means local time."""
    text = str(value or "").strip().replace(" ", "T", 1)
    if not text:
        return None
    if _MINUTE_PRECISION.match(text):
        text += ":00"
    try:
        return _as_local(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"customEndTime is not a valid timestamp: {value!r}")


def parse_start_date(value: Optional[str]) -> Optional[datetime]:
    text = str(value or "").strip()
    if not text:
        return None
    if _DATE_ONLY.match(text):
        text += "T00:00:00"
    try:
        return _as_local(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"startDate is not a valid date: {value!r}")


def sample_duration(min_minutes: float, max_minutes: float, rng: random.Random = random) -> int:
    """Seconds drawn around the middle of the window and clamped into it."""
    min_s, max_s = min_minutes * 60, max_minutes * 60
    mean = (min_s + max_s) / 2
    std = max(5, (max_s - min_s) / 6)
    return int(min(max_s, max(min_s, math.floor(normal_sample(mean, std, rng)))))


def _mac(stu_number: str) -> str:
    return hashlib.sha256(stu_number.encode("utf-8")).hexdigest()[:32]


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def load_payload(payload: Union[JobPayload, Dict[str, Any]]) -> JobPayload:
    if isinstance(payload, JobPayload):
        parsed = payload
    else:
        try:
            parsed = JobPayload.model_validate(payload or {})
        except pydantic.ValidationError as e:
            raise ValidationError(f"invalid job payload: {e.errors()[0]['msg']}") from e
    if parsed.session is None or parsed.run_point is None:
        raise ValidationError("job payload is missing session or runPoint")
    return parsed


def build_run_request(payload: JobPayload, rng: random.Random = random, now: Optional[datetime] = None) -> RunRequest:
    if payload.mileage is None or payload.min_time is None or payload.max_time is None:
        raise ValidationError("job payload needs mileage, minTime and maxTime")
    if payload.min_time < 0 or payload.max_time <= 0 or payload.min_time > payload.max_time:
        raise ValidationError(f"invalid time window {payload.min_time}..{payload.max_time} minutes")

    session, run_point = payload.session, payload.run_point
    now_local = _as_local(now) if now else localnow()
    duration = max(1, sample_duration(payload.min_time, payload.max_time, rng))

    custom_end = parse_end_time(payload.custom_end_time)
    semester_start = parse_start_date(payload.start_date)
    if custom_end is not None:
        if custom_end > now_local:
            raise TemporalOrderError("customEndTime must not be later than now")
        if semester_start is not None and custom_end < semester_start:
            raise TemporalOrderError("customEndTime is earlier than the semester start")
        end = custom_end
        start = end - timedelta(seconds=duration)
    else:
        start = now_local
        end = now_local + timedelta(seconds=duration)

    adjusted_km = float(payload.mileage) * (1 + rng.uniform(0.01, 0.06))
    km = f"{adjusted_km:.2f}"
    avg_speed = f"{adjusted_km / (duration / 3600):.2f}"

    run_date = end.strftime("%Y-%m-%d")
    today = now_local.strftime("%Y-%m-%d")
    is_backfill = custom_end is not None and run_date != today
    stu_number = session.stu_number or ""

    req = {
        "LocalSubmitReason": "offline-backfill" if is_backfill else "",
        "avgSpeed": avg_speed,
        "baseStation": "",
        "endTime": end.strftime("%H:%M:%S"),
        "evaluateDate": run_date if is_backfill else end.strftime("%Y-%m-%d %H:%M:%S"),
        "fitDegree": "1",
        "flag": "1",
        "headImage": "",
        "ifLocalSubmit": "1" if is_backfill else "0",
        "km": km,
        "mac": _mac(stu_number),
        "phoneInfo": PHONE_INFO,
        "phoneNumber": session.phone_number or "",
        "pointList": "",
        "routeId": run_point.point_id,
        "runType": "0",
        "runTimeType": "0",
        "sensorString": "",
        "startTime": start.strftime("%H:%M:%S"),
        "steps": str(1000 + rng.randrange(1000)),
        "stuNumber": stu_number,
        "submitDate": run_date if is_backfill else today,
        "taskId": run_point.task_id,
        "token": session.token,
        "usedTime": format_duration((end - start).total_seconds()),
        "version": APP_VERSION,
        "consume": str(_round_half_up(adjusted_km * ENERGY_PER_KM)),
        "warnFlag": "0",
        "warnType": "0",
        "faceData": "",
    }
    return RunRequest(
        req=req,
        adjusted_km=float(km),
        duration_seconds=duration,
        start=start,
        end=end,
        is_backfill=is_backfill,
    )


def execute(
    payload: Union[JobPayload, Dict[str, Any]],
    upstream: Submitter,
    rng: random.Random = random,
    now: Optional[datetime] = None,
) -> str:
    """Submit one run and return a human readable summary."""
    job = load_payload(payload)
    run = build_run_request(job, rng, now)
    trail = synthesize(job.run_point.point_list, run.adjusted_km, rng)
    session = job.session
    logger.info(
        "submitting run for %s: %s km in %ss%s",
        session.stu_number, run.req["km"], run.duration_seconds, " (backfill)" if run.is_backfill else "",
    )

    upstream.submit(
        BEGIN_PATH,
        {
            "campusId": session.campus_id,
            "schoolId": session.school_id,
            "stuNumber": session.stu_number,
            "token": session.token,
        },
    )
    exercise = upstream.submit(EXERCISE_PATH, run.req)
    scantron_id = exercise.get("scantronId")
    if not scantron_id:
        raise UpstreamError(None, f"response is missing scantronId: {json.dumps(exercise, ensure_ascii=False)}", EXERCISE_PATH)

    upstream.submit(
        DETAIL_PATH,
        {
            "pointList": trail.points,
            "scantronId": scantron_id,
            "stuNumber": session.stu_number,
            "token": session.token,
        },
        encrypted=False,
    )
    return (
        f"submitted run: distance {trail.distance_km:.2f} km, "
        f"pace {run.req['avgSpeed']} km/h, elapsed {run.req['usedTime']}"
    )
