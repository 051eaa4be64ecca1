from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class DeliveryStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCEEDED, DeliveryStatus.DEAD_LETTER)


class ErrorKind(Enum):
    """Coarse classification of a failed attempt, stored in ``last_error``."""

    CLIENT_REJECTED = "client_rejected"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SIGNATURE_INVALID = "signature_invalid"
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class Response:
    """What came back from one completed attempt.

    ``status_code`` is None when the request never produced a response
    (network error or timeout); ``body`` may then carry the error text.
    """

    status_code: int | None
    body: str
    time_ms: int


@dataclass(frozen=True)
class Outcome:
    success: bool
    response: Response
    error: ErrorKind | None = None
    detail: str | None = None

    @property
    def status_code(self) -> int | None:
        return self.response.status_code

    @property
    def elapsed_ms(self) -> int:
        return self.response.time_ms


@dataclass
class DeliveryRecord:
    id: str
    event_id: str
    target_url: str
    payload: dict
    secret: str = field(repr=False)
    status: DeliveryStatus
    attempts: int
    max_attempts: int
    created_at: datetime
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    last_response: Response | None = None

    @property
    def attempts_remaining(self) -> int:
        return self.max_attempts - self.attempts


@dataclass(frozen=True)
class DeadLetterAlert:
    delivery_id: str
    target_url: str
    attempts: int
    last_error: str | None

    def as_dict(self) -> dict:
        return {
            "type": "webhook_dead_letter",
            "delivery_id": self.delivery_id,
            "target_url": self.target_url,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }
