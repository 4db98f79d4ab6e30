class BookingError(Exception):
    """Base class for failures the booking core reports to its caller."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(BookingError):
    pass


class InvalidTransition(BookingError):
    """Raised when an event is not defined for the booking's current status."""

    def __init__(self, current, event):
        super().__init__(f"Cannot {event.value.lower()} a booking in status {current.value}")
        self.current = current
        self.event = event


class Unauthorized(BookingError):
    pass


class SchedulingConflict(BookingError):
    def __init__(self, provider_id: int, message: str | None = None):
        super().__init__(message or f"Provider {provider_id} already has an active booking in this time window")
        self.provider_id = provider_id


class ValidationError(BookingError):
    pass


class InvalidOperation(BookingError):
    pass


class PersistenceError(BookingError):
    """Storage failed after validation passed. Safe to retry."""

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause
