# core/exceptions.py
"""Define standardized exception types for the gateway.

This module provides a small exception hierarchy and helpers used across the
service to propagate actionable error details without losing the original
exception. The HTTP layer maps these types to status codes in one place.
"""

from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(GatewayError):
    """Client-caused errors: missing or malformed fields, oversized values."""

    status_code = 400


class RequestValidationError(ValidationError):
    """A request body failed validation.

    `errors` holds one human-readable message per violated rule.
    """

    def __init__(self, message: str, errors: list[str] | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.errors = errors or []


class PayloadTooLargeError(ValidationError):
    status_code = 413


class UnsupportedMediaTypeError(ValidationError):
    status_code = 415


class SignatureError(GatewayError):
    """An inbound signed delivery was missing, stale or did not match its signature."""

    status_code = 401


class NotFoundError(GatewayError):
    status_code = 404


class DatabaseError(GatewayError):
    """Errors related to authoritative (graph) store operations."""


class DatabaseConnectionError(DatabaseError):
    """Errors related to database connection issues."""

    status_code = 503


class DatabaseTransactionError(DatabaseError):
    """Errors related to database transaction handling."""


class OrphanEntityError(ValidationError):
    """A character, location, chapter or world state referenced a novel that does not exist."""

    status_code = 404


class DependencyUnavailableError(GatewayError):
    """A non-authoritative dependency (cache, vector index, embedding service) is unreachable."""

    status_code = 503


class ProviderConfigurationError(GatewayError):
    """Unknown AI provider name or a provider lacking the requested capability."""

    status_code = 400


class ProviderError(GatewayError):
    """An AI provider call failed or returned an unusable response."""

    status_code = 502


class DelegationError(GatewayError):
    """The external workflow engine could not be reached or answered with a non-2xx status."""

    status_code = 502


class GenerationError(GatewayError):
    """The local generation pipeline could not produce an acceptable chapter."""

    status_code = 502


def create_error_context(**kwargs: Any) -> dict[str, Any]:
    """Build a context dictionary for structured errors.

    Args:
        **kwargs: Key-value pairs to include.

    Returns:
        A dictionary containing only keys whose values are not `None`.
    """
    return {k: v for k, v in kwargs.items() if v is not None}


def handle_database_error(operation: str, original_error: Exception, **context: Any) -> DatabaseError:
    """Convert an exception into a standardized database error.

    Args:
        operation: Name/description of the database operation that failed.
        original_error: The caught exception.
        **context: Additional structured context to attach.

    Returns:
        A `DatabaseError` subclass chosen by heuristics over the original error text.
    """
    if isinstance(original_error, DatabaseError):
        return original_error

    error_details = create_error_context(
        operation=operation,
        original_error=str(original_error),
        error_type=type(original_error).__name__,
        **context,
    )

    lowered = str(original_error).lower()
    if "connection" in lowered or "unavailable" in lowered:
        return DatabaseConnectionError(f"Database connection failed during {operation}", details=error_details)
    elif "transaction" in lowered:
        return DatabaseTransactionError(f"Database transaction failed during {operation}", details=error_details)
    else:
        return DatabaseError(f"Database error during {operation}", details=error_details)
