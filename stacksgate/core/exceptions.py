class StacksGateError(Exception):
    """Base exception for the StacksGate settlement engine."""

    pass


class ValidationError(StacksGateError):
    """Raised for malformed input. Never retried."""

    pass


class NotFoundError(StacksGateError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} '{entity_id}' not found")


class InvalidStateError(StacksGateError):
    """Raised when an operation is not permitted in the entity's current state."""

    pass


class ChainUnavailable(StacksGateError):
    """Raised when the external chain API cannot be reached or answers garbage.

    Callers treat this as "no new information", never as a failed payment.
    """

    pass


class DeliveryFailure(StacksGateError):
    """Raised when a webhook POST does not end in a 2xx response."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Webhook delivery failed with status {status_code}: {body[:200]}")


class ConfigurationError(StacksGateError):
    """Raised when a subsystem is missing required configuration."""

    pass
