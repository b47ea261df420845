"""Error taxonomy. `retryable` decides whether a failed attempt is re-queued."""
from typing import Optional


class SunrunError(Exception):
    retryable = False


class ValidationError(SunrunError):
    """Job payload is malformed."""


class EmptyTaskError(ValidationError):
    """Task carries no usable route waypoints."""


class TemporalOrderError(SunrunError):
    """Explicit end time is in the future or before the semester start."""


class InsufficientCreditError(SunrunError):
    def __init__(self, user_id: str, credits: int = 0):
        super().__init__(f"insufficient backfill credits for {user_id} (balance {credits})")
        self.user_id = user_id
        self.credits = credits


class UpstreamError(SunrunError):
    retryable = True

    def __init__(self, status: Optional[int], body: str, path: str = ""):
        where = f"upstream {path}" if path else "upstream"
        super().__init__(f"{where} returned {status}: {body[:512]}")
        self.status = status
        self.body = body
        self.path = path


class StoreUnavailableError(SunrunError):
    retryable = True


def is_retryable(exc: BaseException) -> bool:
    # anything we did not classify is assumed transient
    if isinstance(exc, SunrunError):
        return exc.retryable
    return True
