class RenewalEngineError(Exception):
    """Base class for all engine errors."""


class InstanceNotFoundError(RenewalEngineError):
    def __init__(self, instance_id: str):
        super().__init__(f"Workflow instance not found: {instance_id}")
        self.instance_id = instance_id


class EventLogError(RenewalEngineError):
    """An event could not be appended to or read from the log."""


class ConcurrencyConflictError(RenewalEngineError):
    """The instance changed (or the event was consumed) since it was read."""

    def __init__(self, instance_id: str, expected_version: int, actual_version: int | None = None):
        super().__init__(
            f"Concurrent update on {instance_id}: expected version {expected_version}, found {actual_version}"
        )
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class DispatchError(RenewalEngineError):
    """An outbound side effect could not be delivered."""


class TransientDispatchError(DispatchError):
    """Delivery failed but may succeed on retry (timeouts, 5xx, network)."""


class PermanentDispatchError(DispatchError):
    """Delivery was rejected and retrying will not help (4xx, missing recipient)."""
