"""Fixed sample payloads for endpoint testing.

These are fixtures, not live data: the same template always produces the
same body so partner-side test runs are reproducible.
"""
import copy

FIXED_TIMESTAMP = "2024-01-01T00:00:00+00:00"

TEMPLATES = {
    "success": {
        "event_id": "evt_test_success",
        "event_type": "verification.completed",
        "user_id": "user_12345",
        "vai_number": "VAI-2024-001234",
        "status": "completed",
        "timestamp": FIXED_TIMESTAMP,
        "verification_details": {
            "document_verified": True,
            "biometric_match": True,
            "liveness_check": True,
        },
    },
    "failed": {
        "event_id": "evt_test_failed",
        "event_type": "verification.failed",
        "user_id": "user_12345",
        "vai_number": None,
        "status": "failed",
        "timestamp": FIXED_TIMESTAMP,
        "error_reason": "Document could not be verified",
        "verification_details": {
            "document_verified": False,
            "biometric_match": False,
            "liveness_check": False,
        },
    },
    "pending": {
        "event_id": "evt_test_pending",
        "event_type": "verification.pending",
        "user_id": "user_12345",
        "vai_number": None,
        "status": "pending",
        "timestamp": FIXED_TIMESTAMP,
        "message": "Verification in progress",
    },
}


def get_template(name: str) -> dict:
    """Return a copy of the named template so callers can tweak it freely."""
    try:
        return copy.deepcopy(TEMPLATES[name])
    except KeyError:
        raise ValueError(
            f"Unknown template {name!r}; choose from {sorted(TEMPLATES)}"
        ) from None
