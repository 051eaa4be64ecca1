class StoreError(Exception):
    """Base class for delivery store failures."""


class StoreUnavailableError(StoreError):
    """The backing database could not be reached."""


class DeliveryNotFoundError(StoreError):
    def __init__(self, delivery_id: str):
        super().__init__(f"Delivery {delivery_id} not found")
        self.delivery_id = delivery_id


class ReplaySourceNotFoundError(DeliveryNotFoundError):
    """A replay referenced a delivery that does not exist."""


class InvalidTransitionError(StoreError):
    def __init__(self, delivery_id: str, current: str, action: str):
        super().__init__(f"Cannot {action} delivery {delivery_id} in status {current}")
        self.delivery_id = delivery_id
        self.current = current
        self.action = action
