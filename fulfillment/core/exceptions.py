class FulfillmentError(Exception):
    """Base exception for the fulfillment pipeline."""

    pass


class PermanentEventError(FulfillmentError):
    """Raised for events that can never succeed; dead-lettered without retries."""

    pass


class MalformedEventError(PermanentEventError):
    """Raised when an envelope or its payload fails validation."""

    pass


class UnknownEventTypeError(PermanentEventError):
    """Raised when an envelope carries a type no stage understands."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown event type '{event_type}'")


class TransientError(FulfillmentError):
    """Raised for failures worth retrying (store unavailable, broker hiccup)."""

    pass


class TutorMatchingError(TransientError):
    """Raised when the tutor matching collaborator fails, times out, or returns no tutor."""

    pass


class AllocationNotFoundError(PermanentEventError):
    """Raised when a scheduling trigger references an allocation that does not exist."""

    def __init__(self, allocation_id):
        self.allocation_id = allocation_id
        super().__init__(f"Allocation {allocation_id} not found")


class EventPublishError(TransientError):
    """Raised when the event log refuses or fails to accept a publish."""

    pass


class RetryLimitExceededError(FulfillmentError):
    """Raised when a stage exhausts its retry budget for one event."""

    def __init__(self, stage: str, attempts: int, last_error: BaseException | None = None):
        self.stage = stage
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry limit exceeded for stage '{stage}' after {attempts} attempts")
