from .verification import VerificationStatus, EVENT_TYPES
from .webhook import WebhookEvent, TestInvocation
from .delivery import (
    DeadLetterAlert,
    DeliveryRecord,
    DeliveryStatus,
    ErrorKind,
    Outcome,
    Response,
)

__all__ = [
    "VerificationStatus", "EVENT_TYPES",
    "WebhookEvent", "TestInvocation",
    "DeadLetterAlert", "DeliveryRecord", "DeliveryStatus",
    "ErrorKind", "Outcome", "Response",
]
