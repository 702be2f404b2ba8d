"""
Custom exception hierarchy for the perma-cache data-access layer.

All exceptions inherit from PermaCacheError, which provides optional context
for structured error handling and logging.

Not-found is never an exception here: single lookups return None and
listings return an empty list.
"""

from __future__ import annotations

from typing import Any

HTTP_STATUS_CONFLICT = 409


class PermaCacheError(Exception):
    """Base exception for all perma-cache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(PermaCacheError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing DATABASE_URL or DATABASE_TOKEN
        - Endpoint that is not an http(s) URL
    """

    pass


class DBError(PermaCacheError):
    """Raised when the store reports an error this layer does not classify.

    Wraps the original error as ``cause``. Context should include:
        - code: The PostgREST / PostgreSQL error code, if any
        - details: Store-provided details, if any
        - hint: Store-provided hint, if any
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, context)
        self.cause = cause

    @classmethod
    def from_error(cls, error: BaseException) -> DBError:
        """Wrap a store error, lifting its code, details and hint into context."""
        context: dict[str, Any] = {}
        for attr in ("code", "details", "hint"):
            value = getattr(error, attr, None)
            if value:
                context[attr] = value
        message = getattr(error, "message", None) or str(error) or error.__class__.__name__
        db_error = cls(message, context, cause=error)
        db_error.__cause__ = error
        return db_error


class EntryNotCreatedError(DBError):
    """Raised when an insert reports success but returns no row."""

    pass


class ConstraintError(PermaCacheError):
    """Raised when a domain invariant is violated.

    Cases:
        - Duplicate active URL for a user on create (status 409)
        - Duplicate active tag name for a user on read (data corruption)
        - An identity that matches more than one user
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, context)
        self.status = status
