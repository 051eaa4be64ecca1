import uuid
from datetime import datetime, timezone

from src.models.verification import EVENT_TYPES, VerificationStatus
from src.models.webhook import WebhookEvent


class WebhookFactory:
    """Factory for creating WebhookEvent instances with sensible defaults."""

    @staticmethod
    def create_event(event_type: str = "verification.completed", **overrides) -> WebhookEvent:
        user_id = overrides.pop("user_id", f"user_{uuid.uuid4().hex[:12]}")
        vai_number = overrides.pop("vai_number", _vai_number_for(event_type))
        event_id = overrides.pop("event_id", f"evt_{uuid.uuid4().hex[:16]}")
        now = overrides.pop("timestamp", datetime.now(timezone.utc))

        payload = WebhookFactory._build_payload(
            event_type, event_id, vai_number, user_id, now, **overrides
        )
        payload_overrides = overrides.pop("payload", None)
        if payload_overrides:
            payload.update(payload_overrides)

        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            timestamp=now,
            payload=payload,
            vai_number=vai_number,
            user_id=user_id,
        )

    @staticmethod
    def _build_payload(
        event_type: str,
        event_id: str,
        vai_number: str | None,
        user_id: str,
        timestamp: datetime,
        **kwargs,
    ) -> dict:
        status = _event_type_to_status(event_type)
        base = {
            "event_id": event_id,
            "event_type": event_type,
            "vai_number": vai_number,
            "user_id": user_id,
            "status": status,
            "timestamp": timestamp.isoformat(),
        }

        if status == VerificationStatus.COMPLETED.value:
            base["verification_details"] = {
                "document_verified": kwargs.get("document_verified", True),
                "biometric_match": kwargs.get("biometric_match", True),
                "liveness_check": kwargs.get("liveness_check", True),
            }
        elif status == VerificationStatus.FAILED.value:
            base["error_reason"] = kwargs.get("error_reason", "Document could not be verified")
        elif status == VerificationStatus.PENDING.value:
            base["message"] = kwargs.get("message", "Verification in progress")

        return base


def _vai_number_for(event_type: str) -> str | None:
    if _event_type_to_status(event_type) != VerificationStatus.COMPLETED.value:
        return None
    return f"VAI-{uuid.uuid4().hex[:8].upper()}"


def _event_type_to_status(event_type: str) -> str:
    for status, name in EVENT_TYPES.items():
        if name == event_type:
            return status.value
    return "unknown"
