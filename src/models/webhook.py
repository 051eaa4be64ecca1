from dataclasses import dataclass
from datetime import datetime


@dataclass
class WebhookEvent:
    """A verification outcome to be announced to a business partner."""

    event_id: str
    event_type: str  # "verification.completed", "verification.failed", etc.
    timestamp: datetime
    payload: dict
    vai_number: str | None = None
    user_id: str | None = None


@dataclass
class TestInvocation:
    __test__ = False  # keep pytest from collecting it

    id: str
    kind: str  # "test" or "replay"
    target_url: str
    payload: dict
    success: bool
    response_status: int | None
    response_body: str | None
    response_time_ms: int
    error_message: str | None
    created_at: datetime
    replay_of: str | None = None
