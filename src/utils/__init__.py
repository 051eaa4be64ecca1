from .crypto import (
    SignatureCheck,
    canonical_payload,
    generate_signature,
    verify_request,
    verify_signature,
)
from .factories import WebhookFactory

__all__ = [
    "SignatureCheck", "canonical_payload", "generate_signature",
    "verify_request", "verify_signature",
    "WebhookFactory",
]
