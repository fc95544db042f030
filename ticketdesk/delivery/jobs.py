from __future__ import annotations
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional

# minutes to wait before each buffered retry, indexed by buffer attempts
BUFFER_SCHEDULE_MINUTES = (5, 20, 60, 240)


class JobType(str, Enum):
    TRANSFER_COMPLETED = "transfer_completed"
    TICKET_EMAIL = "ticket_email"
    PAYMENT_REJECTION = "payment_rejection"
    REMINDER = "reminder"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


@dataclass
class NotificationJob:
    # kept as a plain string so an unknown tag survives a round trip through
    # the buffer and is rejected by dispatch instead of at load time
    type: str
    payload: Dict[str, Any]
    created_at: float
    priority: Priority = Priority.NORMAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    # total delivery attempts across queue and buffer
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None
    # buffer bookkeeping, only meaningful once externalized
    buffer_attempts: int = 0
    next_retry_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["priority"] = self.priority.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "NotificationJob":
        return cls(
            id=d["id"],
            type=d["type"],
            payload=d.get("payload") or {},
            created_at=float(d["created_at"]),
            priority=Priority(d.get("priority", Priority.NORMAL.value)),
            attempts=int(d.get("attempts", 0)),
            next_attempt_at=float(d.get("next_attempt_at") or 0.0),
            last_error=d.get("last_error"),
            buffer_attempts=int(d.get("buffer_attempts", 0)),
            next_retry_at=d.get("next_retry_at"),
        )


def retry_delay(attempts: int, base: float) -> float:
    """In-memory backoff: base, 2*base, 4*base ... seconds."""
    return base * 2 ** max(0, attempts - 1)


def buffer_retry_at(buffer_attempts: int, now: float) -> Optional[float]:
    """
    Next buffered retry time, or None once the schedule is exhausted and the
    job belongs in the failed partition.
    """
    if buffer_attempts >= len(BUFFER_SCHEDULE_MINUTES):
        return None
    return now + BUFFER_SCHEDULE_MINUTES[buffer_attempts] * 60
