from .executor import DeliveryExecutor
from .retry import BackoffPolicy
from .scheduler import RetryScheduler, TickSummary
from .signer import WebhookSigner

__all__ = [
    "DeliveryExecutor",
    "BackoffPolicy",
    "RetryScheduler",
    "TickSummary",
    "WebhookSigner",
]
