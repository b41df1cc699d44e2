"""
Errors raised by the circulation engine and its stores.

Domain errors derive from CirculationError and carry a message that can be
shown to staff as-is. StoreUnavailable is kept outside that hierarchy: it means
the store could not be reached or timed out, and the caller may retry.
"""


class CirculationError(Exception):
    """Base class for circulation domain errors."""

    code = "circulation_error"

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFound(CirculationError):
    """Referenced book, copy, transaction, borrower or setting does not exist."""

    code = "not_found"


class InvalidState(CirculationError):
    """Operation is not allowed from the entity's current status."""

    code = "invalid_state"


class ValidationFailed(CirculationError):
    """Input was rejected (missing reason, duplicate value, bad borrower id...)."""

    code = "validation_failed"


class ConflictFailed(CirculationError):
    """A concurrent request changed the row first; nothing was applied."""

    code = "conflict"


class StoreUnavailable(Exception):
    """Store connectivity failure or timeout. Safe to retry."""

    code = "store_unavailable"

    def __init__(self, message="Store temporarily unavailable"):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.code, "message": self.message, "retryable": True}


class PermissionDenied(CirculationError):
    """Unknown or inactive staff member, or a role not allowed to act."""

    code = "forbidden"
