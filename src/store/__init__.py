from .exceptions import (
    DeliveryNotFoundError,
    InvalidTransitionError,
    ReplaySourceNotFoundError,
    StoreError,
    StoreUnavailableError,
)
from .store import DeliveryStore, create_db_engine

__all__ = [
    "DeliveryStore", "create_db_engine",
    "StoreError", "StoreUnavailableError", "DeliveryNotFoundError",
    "ReplaySourceNotFoundError", "InvalidTransitionError",
]
