"""
Error taxonomy shared by the domain, the services and the API layer.

The core never swallows these; main.py translates them into JSON responses.
"""
from typing import Optional


class LibraryError(Exception):
    code = "LIBRARY_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InvalidArgumentError(LibraryError, ValueError):
    """Malformed or missing input to a factory; raised before any mutation."""
    code = "INVALID_ARGUMENT"


class InvalidStateError(LibraryError):
    """An operation was invoked on an entity in the wrong state."""
    code = "INVALID_STATE"


class LoanPolicyViolation(LibraryError):
    """A cross-entity lending rule rejected the request."""
    code = "POLICY_VIOLATION"


class NotFoundError(LibraryError):
    code = "NOT_FOUND"


class DuplicateError(LibraryError):
    code = "DUPLICATE"


class ConcurrencyConflictError(LibraryError):
    """Another writer updated the record first (version mismatch)."""
    code = "CONCURRENT_MODIFICATION"


class AuthenticationError(LibraryError):
    code = "INVALID_CREDENTIALS"
