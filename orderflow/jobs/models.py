from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from orderflow.orders.models import JobPayload


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff: the retry after failed attempt `n` (1-based) waits
    base * 2**(n-1), capped at max_delay_s. Delays never decrease.
    """

    base_delay_s: float = 2.0
    max_delay_s: float = 30.0

    def __post_init__(self) -> None:
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("backoff delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        n = max(1, int(attempt))
        return float(min(self.max_delay_s, self.base_delay_s * (2 ** (n - 1))))


@dataclass(frozen=True)
class Job:
    job_id: str
    payload: JobPayload
    state: JobState
    attempts: int
    max_attempts: int
    backoff: BackoffPolicy
    available_at: datetime
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None
    retry_delays: tuple[float, ...] = ()

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> dict[str, object]:
        return {
            "jobId": self.job_id,
            "orderId": self.payload.order_id,
            "state": self.state.value,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "lastError": self.last_error,
            "retryDelays": list(self.retry_delays),
            "availableAt": self.available_at.isoformat(),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
