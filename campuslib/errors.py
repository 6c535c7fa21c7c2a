"""Error taxonomy shared by the catalog, circulation and management layers.

Every error carries a stable ``code`` (used by the HTTP layer and the CLI)
and a ``retryable`` flag.  Only store/transport failures are retryable; guard
violations need new input, and inconsistencies need an operator.
"""

from __future__ import annotations


class LibraryError(Exception):
    """Base class for all library errors."""

    code = "library_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, "retryable": self.retryable}


class ValidationError(LibraryError):
    """Malformed input, rejected before any store call."""

    code = "validation_error"


class NotFound(LibraryError):
    """A lookup matched no record."""

    code = "not_found"


class StoreUnavailable(LibraryError):
    """The backing store is unreachable, timed out or errored. Outcome unknown."""

    code = "store_unavailable"
    retryable = True


class LookupFailed(StoreUnavailable):
    """A read-only lookup could not reach the store."""

    code = "lookup_failed"


class GuardViolation(LibraryError):
    code = "guard_violation"


class BookUnavailable(GuardViolation):
    code = "book_unavailable"


class BookNotIssued(GuardViolation):
    code = "book_not_issued"


class ProfileNotVerified(GuardViolation):
    code = "profile_not_verified"


class InconsistentState(LibraryError):
    """The availability flag disagrees with the transaction ledger."""

    code = "inconsistent_state"


class NotAuthorized(LibraryError):
    code = "not_authorized"


class RecordConflict(LibraryError):
    """A write collided with a uniqueness or referential constraint."""

    code = "record_conflict"
