import time

from src.utils.crypto import (
    COMBINED_SIGNATURE_HEADER,
    DEFAULT_TOLERANCE_SECONDS,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    SignatureCheck,
    build_signature_header,
    canonical_payload,
    generate_signature,
    verify_signature,
)


class WebhookSigner:
    """Signs and verifies webhook payloads using HMAC-SHA256."""

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def sign(self, payload: dict, timestamp: int) -> str:
        return generate_signature(self.secret, timestamp, canonical_payload(payload))

    def verify(
        self,
        payload: dict,
        timestamp,
        signature: str | None,
        now: float | None = None,
    ) -> SignatureCheck:
        return verify_signature(
            self.secret,
            timestamp,
            canonical_payload(payload),
            signature,
            self.tolerance_seconds,
            now,
        )

    def headers(self, payload_bytes: bytes, timestamp: int | None = None) -> dict:
        """Signature headers for an outbound request body."""
        ts = int(time.time()) if timestamp is None else int(timestamp)
        signature = generate_signature(self.secret, ts, payload_bytes)
        return {
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: str(ts),
            COMBINED_SIGNATURE_HEADER: build_signature_header(ts, signature),
        }
