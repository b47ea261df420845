from datetime import datetime, timezone
from zoneinfo import ZoneInfo

# Upstream dates and times are interpreted in China Standard Time.
LOCAL_TZ = ZoneInfo("Asia/Shanghai")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def localnow() -> datetime:
    return utcnow().astimezone(LOCAL_TZ)
