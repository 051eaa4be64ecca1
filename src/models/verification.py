from enum import Enum


class VerificationStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"


EVENT_TYPES = {
    VerificationStatus.COMPLETED: "verification.completed",
    VerificationStatus.FAILED: "verification.failed",
    VerificationStatus.PENDING: "verification.pending",
}
