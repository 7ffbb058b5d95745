# notifier/errors.py


class NotifierError(Exception):
    """Base class for errors raised by the notifier service."""


class ConfigurationError(NotifierError):
    """A required setting is missing or invalid."""


class EventNotFound(NotifierError, LookupError):
    def __init__(self, event_id):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


class ApiError(NotifierError):
    """Request error rendered as ``{"message": ...}`` with ``status_code``."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
