"""Consolidated exception hierarchy for the home index synchronization service.

This module provides a single exception hierarchy that:
1. Categorizes errors by domain (access, lookup, relational conflicts, index cache)
2. Carries an HTTP-style status code and a stable error code for callers
3. Enables structured error payloads via ``to_dict()``

Propagation rules:
    AuthorizationError, NotFoundError and ConflictError abort a mutation before any
    relational or cache write. IndexConvergenceError is raised by index cache adapters
    only; the synchronization engine catches it, logs it and records it in its report.
"""

from __future__ import annotations

from typing import Any


class HomeSyncError(Exception):
    """Base exception for all application-specific errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"
    default_status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.status_code = status_code or self.default_status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Validation Errors (400)
class ValidationError(HomeSyncError):
    default_message = "Validation failed"
    default_error_code = "VALIDATION_ERROR"
    default_status_code = 400


class InvalidInputError(ValidationError):
    default_message = "Invalid input provided"
    default_error_code = "INVALID_INPUT"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            str_value = str(value)
            details["value"] = str_value[:100] if len(str_value) > 100 else str_value
        if constraint:
            details["constraint"] = constraint
        super().__init__(message, details=details, **kwargs)


# Access Errors (403)
class AuthorizationError(HomeSyncError):
    default_message = "Access denied"
    default_error_code = "ACCESS_DENIED"
    default_status_code = 403

    def __init__(
        self,
        message: str | None = None,
        *,
        resource_type: str | None = None,
        resource_ids: list[str] | None = None,
        organization_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_ids:
            details["resource_ids"] = list(resource_ids)
        if organization_id:
            details["organization_id"] = organization_id
        super().__init__(message, details=details, **kwargs)


# Not Found Errors (404)
class NotFoundError(HomeSyncError):
    default_message = "Resource not found"
    default_error_code = "NOT_FOUND"
    default_status_code = 404


class ResourceNotFoundError(NotFoundError):
    def __init__(
        self,
        resource_type: str,
        resource_id: str | int,
        message: str | None = None,
        **kwargs: Any,
    ) -> None:
        if message is None:
            message = f"{resource_type.title()} with id '{resource_id}' not found"
        details = kwargs.pop("details", {}) or {}
        details["resource_type"] = resource_type
        details["resource_id"] = str(resource_id)
        super().__init__(message, details=details, **kwargs)


# Conflict Errors (409)
class ConflictError(HomeSyncError):
    default_message = "Request conflicts with current state"
    default_error_code = "CONFLICT"
    default_status_code = 409


class DuplicateResourceError(ConflictError):
    default_error_code = "DUPLICATE_RESOURCE"

    def __init__(
        self,
        resource_type: str,
        *,
        field: str | None = None,
        value: str | None = None,
        message: str | None = None,
        **kwargs: Any,
    ) -> None:
        if message is None:
            if field and value:
                message = f"{resource_type.title()} with {field} '{value}' already exists"
            else:
                message = f"{resource_type.title()} conflicts with an existing record"
        details = kwargs.pop("details", {}) or {}
        details["resource_type"] = resource_type
        if field:
            details["field"] = field
        if value:
            details["value"] = value
        super().__init__(message, details=details, **kwargs)


class LockTimeoutError(ConflictError):
    """Raised when a mutation cannot acquire its per-entity locks in time.

    The mutation is aborted before any relational write, so no partial state
    is left behind.
    """

    default_message = "Timed out waiting for a concurrent mutation to finish"
    default_error_code = "LOCK_TIMEOUT"

    def __init__(
        self,
        message: str | None = None,
        *,
        lock_keys: list[str] | None = None,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if lock_keys:
            details["lock_keys"] = list(lock_keys)
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, details=details, **kwargs)


# External Service Errors (503)
class ExternalServiceError(HomeSyncError):
    default_message = "External service temporarily unavailable"
    default_error_code = "SERVICE_UNAVAILABLE"
    default_status_code = 503

    def __init__(
        self,
        message: str | None = None,
        *,
        service_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.service_name = service_name
        details = kwargs.pop("details", {}) or {}
        if service_name:
            details["service"] = service_name
        super().__init__(message, details=details, **kwargs)


class CacheError(ExternalServiceError):
    default_message = "Cache temporarily unavailable"
    default_error_code = "CACHE_ERROR"

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("service_name", "index_cache")
        super().__init__(message, **kwargs)


class IndexConvergenceError(CacheError):
    """Raised when an index cache operation fails during convergence.

    After this error the affected key is in an indeterminate state until the
    next mutation touching the same key converges it again.
    """

    default_message = "Index cache operation failed"
    default_error_code = "INDEX_CONVERGENCE_FAILED"

    def __init__(
        self,
        message: str | None = None,
        *,
        operation: str | None = None,
        key: str | None = None,
        original_error: Exception | None = None,
        **kwargs: Any,
    ) -> None:
        self.operation = operation
        self.key = key
        self.original_error = original_error
        details = kwargs.pop("details", {}) or {}
        if operation:
            details["operation"] = operation
        if key:
            details["key"] = key
        if original_error is not None:
            details["original_error_type"] = type(original_error).__name__
        super().__init__(message, details=details, **kwargs)

