from dataclasses import dataclass
from typing import Optional
import os

DB_FILE = os.path.join(os.path.dirname(__file__), "ridepool.db")
_default_url = f"sqlite:///{DB_FILE}"
DATABASE_URL = os.environ.get("DATABASE_URL", _default_url)

MATCHING_RADIUS_KM = float(os.environ.get("MATCHING_RADIUS_KM", "5.0"))
CANCEL_MAX_ATTEMPTS = int(os.environ.get("CANCEL_MAX_ATTEMPTS", "3"))


def _optional_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw in (None, ""):
        return None
    return float(raw)


@dataclass(frozen=True)
class DispatchPolicy:
    """Retry and worker settings for the match job queue."""

    workers: int = 2
    max_attempts: int = 5
    backoff_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0
    poll_seconds: float = 0.5
    failed_retention: int = 100
    # None disables re-enqueueing of requests that found no match
    unmatched_retry_seconds: Optional[float] = None

    def backoff(self, attempts: int) -> float:
        if attempts < 1:
            return 0.0
        return min(self.backoff_cap_seconds, self.backoff_seconds * 2 ** (attempts - 1))

    @classmethod
    def from_env(cls) -> "DispatchPolicy":
        return cls(
            workers=int(os.environ.get("DISPATCH_WORKERS", "2")),
            max_attempts=int(os.environ.get("DISPATCH_MAX_ATTEMPTS", "5")),
            backoff_seconds=float(os.environ.get("DISPATCH_BACKOFF_SECONDS", "1.0")),
            backoff_cap_seconds=float(os.environ.get("DISPATCH_BACKOFF_CAP", "60.0")),
            poll_seconds=float(os.environ.get("DISPATCH_POLL_SECONDS", "0.5")),
            failed_retention=int(os.environ.get("DISPATCH_FAILED_RETENTION", "100")),
            unmatched_retry_seconds=_optional_float("UNMATCHED_RETRY_SECONDS"),
        )
