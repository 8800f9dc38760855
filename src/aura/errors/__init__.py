"""Custom exception hierarchy for Aura."""

from __future__ import annotations

from typing import Optional


class AuraError(Exception):
    """Base class for all custom errors raised by Aura."""


# --- 3-layer hierarchy ---

class DomainError(AuraError):
    """Base class for domain-level errors."""


class InfrastructureError(AuraError):
    """Base class for infrastructure-level errors."""


class ApplicationError(AuraError):
    """Base class for application-level errors."""


# --- Domain errors ---

class BookNotFoundError(DomainError):
    """Raised when the requested book is not on the shelf."""


# --- Application errors ---

class ImportFailedError(ApplicationError):
    """Raised (or returned) when a single book import cannot be stored."""

    def __init__(self, title: str, cause: BaseException):
        super().__init__(f"Failed to import {title!r}: {cause}")
        self.title = title
        self.cause = cause


class ConfigurationError(ApplicationError):
    """Raised when environment configuration cannot be parsed."""


# --- Infrastructure errors ---

class StorageError(InfrastructureError):
    """Base class for object-store failures.

    ``name`` mirrors the engine's error name (``"ConstraintError"``,
    ``"AbortError"`` ...) so callers can branch without importing every class.
    """

    default_name = "UnknownError"

    def __init__(self, message: str = "", *, name: Optional[str] = None):
        super().__init__(message)
        self.name = name or self.default_name


class SchemaError(StorageError):
    """Raised when a schema descriptor is inconsistent."""

    default_name = "SchemaError"


class DatabaseConnectionError(StorageError):
    """Raised when the engine fails to open the database.

    The connection manager resets its state before raising, so a later
    ``connect()`` starts a fresh attempt.
    """

    default_name = "ConnectionError"


class ConnectionBlockedError(DatabaseConnectionError):
    """Raised when another live connection on an older version blocks the upgrade."""

    default_name = "BlockedError"


class OperationError(StorageError):
    """Raised when an individual request against a collection fails."""

    default_name = "OperationError"


class ConstraintError(OperationError):
    default_name = "ConstraintError"


class DataError(OperationError):
    default_name = "DataError"


class DataCloneError(OperationError):
    default_name = "DataCloneError"


class NotFoundError(OperationError):
    default_name = "NotFoundError"


class ReadOnlyError(OperationError):
    default_name = "ReadOnlyError"


class TransactionInactiveError(OperationError):
    """Raised when a request is issued against a finished transaction."""

    default_name = "TransactionInactiveError"


class InvalidStateError(OperationError):
    default_name = "InvalidStateError"


class InvalidAccessError(OperationError):
    default_name = "InvalidAccessError"


class VersionError(OperationError):
    default_name = "VersionError"


class TransactionAbortError(StorageError):
    """Raised when a transaction aborts for a reason outside the unit of work."""

    default_name = "AbortError"


class AbortError(TransactionAbortError):
    """Generic abort reported by the engine (explicit abort or failed request)."""


class QuotaExceededError(TransactionAbortError):
    default_name = "QuotaExceededError"


class BusinessAbortError(TransactionAbortError):
    """Abort reason recorded when the unit of work itself raised.

    The coordinator never surfaces this class to callers; it re-raises the
    original exception, which is kept on ``original``.
    """

    def __init__(self, original: BaseException):
        super().__init__(f"Unit of work failed: {original}")
        self.original = original
