"""Error taxonomy for event and submission processing.

Every failure the core can raise is a ProcessingError subclass tagged with an
ErrorKind, so the HTTP boundary can branch on ``err.kind`` / ``err.retryable``
instead of parsing messages.
"""
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    ALREADY_PROCESSING = "already_processing"
    IDENTIFIER_CONFLICT = "identifier_conflict"
    STORE_IO = "store_io"
    NOTIFICATION = "notification"


class ProcessingError(Exception):
    """Base class for all core processing failures"""
    kind: ErrorKind
    retryable: bool = True

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ProcessingError):
    """Payload or input is structurally impossible to process"""
    kind = ErrorKind.VALIDATION
    retryable = False


class AlreadyProcessingError(ProcessingError):
    """Another worker currently holds the claim for this event"""
    kind = ErrorKind.ALREADY_PROCESSING
    retryable = True

    def __init__(self, event_id: str):
        super().__init__(f"stripe_event_already_processing:{event_id}")
        self.event_id = event_id


class IdentifierConflictError(ProcessingError):
    """Stripe identifiers point at different ledger rows; needs a human"""
    kind = ErrorKind.IDENTIFIER_CONFLICT
    retryable = False


class StoreIOError(ProcessingError):
    """Transient failure talking to the database"""
    kind = ErrorKind.STORE_IO
    retryable = True


class NotificationError(ProcessingError):
    """Downstream CRM delivery failed (never escapes the notifier)"""
    kind = ErrorKind.NOTIFICATION
    retryable = True


class BadRequestError(Exception):
    """Client input rejected at the HTTP boundary (maps to 400)"""
    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details
