import hashlib
import hmac
import json
import time
from enum import Enum


SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
COMBINED_SIGNATURE_HEADER = "X-Webhook-Signature"

DEFAULT_TOLERANCE_SECONDS = 300


class SignatureCheck(Enum):
    VALID = "valid"
    STALE = "stale"
    INVALID = "invalid"


def canonical_payload(payload: dict) -> bytes:
    """Deterministic JSON encoding shared by signer and verifier."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def generate_signature(secret: str, timestamp: int, payload_bytes: bytes) -> str:
    """HMAC-SHA256 over ``<timestamp>.<payload>``, hex-encoded."""
    message = str(int(timestamp)).encode("ascii") + b"." + payload_bytes
    return hmac.new(
        secret.encode("utf-8"),
        message,
        hashlib.sha256,
    ).hexdigest()


def verify_signature(
    secret: str,
    timestamp,
    payload_bytes: bytes,
    signature: str | None,
    tolerance_seconds: float = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> SignatureCheck:
    """Check a signature, failing closed.

    ``timestamp`` may be an int or the raw header string. Anything that
    cannot be parsed, or a missing signature, is INVALID. A timestamp
    further than ``tolerance_seconds`` from ``now`` in either direction is
    STALE, even when the signature bytes are correct.
    """
    if not signature or not secret:
        return SignatureCheck.INVALID
    try:
        ts = _parse_timestamp(timestamp)
    except (TypeError, ValueError):
        return SignatureCheck.INVALID

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_seconds:
        return SignatureCheck.STALE

    expected = generate_signature(secret, ts, payload_bytes)
    if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode("utf-8")):
        return SignatureCheck.INVALID
    return SignatureCheck.VALID


def build_signature_header(timestamp: int, signature: str) -> str:
    return f"t={int(timestamp)},v1={signature}"


def parse_signature_header(value: str | None) -> tuple[int, str] | None:
    """Parse ``t=<timestamp>,v1=<signature>``. Returns None when malformed."""
    if not value:
        return None
    timestamp = None
    signature = None
    for part in value.split(","):
        key, sep, item = part.strip().partition("=")
        if not sep:
            return None
        if key == "t":
            try:
                timestamp = _parse_timestamp(item)
            except ValueError:
                return None
        elif key == "v1":
            signature = item
    if timestamp is None or not signature:
        return None
    return timestamp, signature


def verify_request(
    secret: str,
    headers,
    body: bytes,
    tolerance_seconds: float = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> SignatureCheck:
    """Verify an inbound request carrying either header form.

    Separate ``X-Signature``/``X-Timestamp`` headers take precedence over
    the combined ``X-Webhook-Signature`` header.
    """
    lookup = {k.lower(): v for k, v in dict(headers).items()}
    signature = lookup.get(SIGNATURE_HEADER.lower())
    timestamp = lookup.get(TIMESTAMP_HEADER.lower())

    if signature is None:
        parsed = parse_signature_header(lookup.get(COMBINED_SIGNATURE_HEADER.lower()))
        if parsed is None:
            return SignatureCheck.INVALID
        timestamp, signature = parsed

    return verify_signature(secret, timestamp, body, signature, tolerance_seconds, now)


def _parse_timestamp(value) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"malformed timestamp: {value!r}")
    return int(text)
