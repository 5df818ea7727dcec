"""
Error kinds raised by the record sharing core.

Every failure carries an ErrorKind so the service facade and the HTTP layer
can report it without inspecting message text.
"""

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    FORBIDDEN = "Forbidden"
    CONFLICT = "Conflict"
    STORE_UNAVAILABLE = "StoreUnavailable"
    INVALID_SIGNATURE = "InvalidSignature"
    NO_SUCH_BINDING = "NoSuchBinding"
    VALIDATION_ERROR = "ValidationError"


class RecordShareError(Exception):
    """Base class for all failures raised by the core"""

    kind = None

    def __init__(self, message=""):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value


class NotFound(RecordShareError):
    kind = ErrorKind.NOT_FOUND


class Forbidden(RecordShareError):
    """Caller lacks ownership or authority over the target"""
    kind = ErrorKind.FORBIDDEN


class Conflict(RecordShareError):
    """Duplicate binding, request or a state that no longer allows the change"""
    kind = ErrorKind.CONFLICT


class StoreUnavailable(RecordShareError):
    """A blob or table store could not be reached in bounded time"""
    kind = ErrorKind.STORE_UNAVAILABLE


class InvalidSignature(RecordShareError):
    kind = ErrorKind.INVALID_SIGNATURE


class NoSuchBinding(RecordShareError):
    kind = ErrorKind.NO_SUCH_BINDING


class ValidationError(RecordShareError):
    kind = ErrorKind.VALIDATION_ERROR
