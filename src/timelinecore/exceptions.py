"""Unified exception hierarchy for timelinecore.

Every error raised by the hierarchy, organization, policy and resolver layers
inherits from TimelineError. This module provides:
- Base exception hierarchy with stable error codes
- ErrorRegistry for protocol mapping
- gRPC error handler decorator for the calling layer

An access denial is never an exception: the resolver returns a Deny decision.
Exceptions here mean "the request is malformed" or "access could not be
determined" and callers must fail closed on the latter.

Usage in a calling layer:
    from timelinecore.exceptions import (
        NotFoundError,
        StoreError,
        grpc_error_handler,
    )
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Callable, TypeVar, cast

__all__ = [
    # Base hierarchy
    "TimelineError",
    "NotFoundError",
    "InvalidParentError",
    "CycleDetectedError",
    "ValidationError",
    "UnauthorizedError",
    "ConfigurationError",
    "StoreError",
    "DatabaseConnectionError",
    # Registry
    "ErrorRegistry",
    "error_registry",
    "register_error",
    # gRPC helpers
    "GRPC_STATUS_NAMES",
    "get_grpc_status_code",
    "grpc_error_metadata",
    "grpc_error_handler",
]

logger = logging.getLogger(__name__)


# ---- Exception Hierarchy ----------------------------------------------------


class TimelineError(Exception):
    """Base exception for timelinecore.

    Attributes:
        code: Stable error code string for protocol mapping (e.g. "NOT_FOUND").
        message: Human-readable error description.
        details: Additional context as keyword arguments.
    """

    code: str = "INTERNAL_ERROR"
    message: str = "An internal error occurred"

    def __init__(self, message: str | None = None, code: str | None = None, **kwargs: Any) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.details = kwargs
        super().__init__(self.message)


class NotFoundError(TimelineError):
    """Referenced node, organization, policy or membership does not exist."""

    code: str = "NOT_FOUND"
    message: str = "Resource not found"


class InvalidParentError(TimelineError):
    """Parent is missing, owned by someone else, or not allowed for the node kind."""

    code: str = "INVALID_PARENT"
    message: str = "Invalid parent node"


class CycleDetectedError(TimelineError):
    """Re-parenting would place a node under itself or one of its descendants."""

    code: str = "CYCLE_DETECTED"
    message: str = "Operation would create a cycle in the hierarchy"


class ValidationError(TimelineError):
    """Malformed input: subject type/id mismatch, unknown enum value, bad metadata."""

    code: str = "VALIDATION_ERROR"
    message: str = "Validation failed"


class UnauthorizedError(TimelineError):
    """Caller failed the ownership gate for a mutating operation."""

    code: str = "UNAUTHORIZED"
    message: str = "Only the node owner may perform this operation"


class ConfigurationError(TimelineError):
    """Invalid or missing configuration."""

    code: str = "CONFIGURATION_ERROR"


class StoreError(TimelineError):
    """Underlying storage failure. Never converted into a Deny."""

    code: str = "STORE_ERROR"
    message: str = "Storage operation failed"


class DatabaseConnectionError(StoreError):
    """Failed to connect to the database."""

    code: str = "DB_CONNECTION_ERROR"
    message: str = "Database connection failed"


# ---- Error Registry for Protocol Mapping ------------------------------------

_E = TypeVar("_E", bound=type[TimelineError])


class ErrorRegistry:
    """Registry for mapping internal errors to external protocol codes."""

    def __init__(self) -> None:
        self._errors: dict[str, type[TimelineError]] = {}

    def register(self, code: str, error_cls: type[TimelineError]) -> None:
        self._errors[code] = error_cls

    def get(self, code: str) -> type[TimelineError] | None:
        return self._errors.get(code)

    def all(self) -> dict[str, type[TimelineError]]:
        return dict(self._errors)


error_registry = ErrorRegistry()


def register_error(code: str) -> Callable[[_E], _E]:
    """Decorator to register a custom error type.

    Usage:
        @register_error("QUOTA_EXCEEDED")
        class QuotaExceededError(TimelineError):
            code = "QUOTA_EXCEEDED"
    """

    def decorator(cls: _E) -> _E:
        error_registry.register(code, cls)
        return cls

    return cast(Callable[[_E], _E], decorator)


# Register base errors
error_registry.register("INTERNAL_ERROR", TimelineError)
error_registry.register("NOT_FOUND", NotFoundError)
error_registry.register("INVALID_PARENT", InvalidParentError)
error_registry.register("CYCLE_DETECTED", CycleDetectedError)
error_registry.register("VALIDATION_ERROR", ValidationError)
error_registry.register("UNAUTHORIZED", UnauthorizedError)
error_registry.register("CONFIGURATION_ERROR", ConfigurationError)
error_registry.register("STORE_ERROR", StoreError)
error_registry.register("DB_CONNECTION_ERROR", DatabaseConnectionError)


# ---- gRPC mapping for the calling layer -------------------------------------

# Error code -> grpc.StatusCode member. Store failures are UNAVAILABLE so a
# client treats the answer as unknown, never as granted.
GRPC_STATUS_NAMES = {
    "NOT_FOUND": "NOT_FOUND",
    "INVALID_PARENT": "FAILED_PRECONDITION",
    "CYCLE_DETECTED": "FAILED_PRECONDITION",
    "VALIDATION_ERROR": "INVALID_ARGUMENT",
    "UNAUTHORIZED": "PERMISSION_DENIED",
    "CONFIGURATION_ERROR": "FAILED_PRECONDITION",
    "STORE_ERROR": "UNAVAILABLE",
    "DB_CONNECTION_ERROR": "UNAVAILABLE",
}

# Details copied into trailing metadata as ``error-<key>``
METADATA_DETAILS = ("node_id", "org_id", "policy_id", "user_id")


def get_grpc_status_code(error: TimelineError) -> Any:
    """grpc.StatusCode for ``error`` (INTERNAL for unmapped codes)."""
    import grpc

    return getattr(grpc.StatusCode, GRPC_STATUS_NAMES.get(error.code, "INTERNAL"))


def grpc_error_metadata(error: TimelineError) -> list[tuple[str, str]]:
    """Trailing metadata naming the error code and the ids it concerns."""
    metadata = [("error-code", error.code)]
    for key in METADATA_DETAILS:
        value = error.details.get(key)
        if value:
            metadata.append((f"error-{key.replace('_', '-')}", str(value)))
    return metadata


def _abort_arguments(method_name: str, error: Exception, context: Any) -> tuple[Any, str]:
    if isinstance(error, TimelineError):
        message = f"[{error.code}] {error.message}"
        logger.error(
            "%s failed: %s",
            method_name,
            message,
            extra={"error_code": error.code, "error_details": error.details},
        )
        context.set_trailing_metadata(grpc_error_metadata(error))
        return get_grpc_status_code(error), message

    import grpc

    logger.exception("%s unexpected error: %s", method_name, error)
    return grpc.StatusCode.INTERNAL, f"Unexpected {type(error).__name__}: {error}"


def grpc_error_handler(method):
    """Decorator for unary servicer methods calling into the timeline core.

    Works on both ``grpc.aio`` (coroutine) and thread-pool (plain) servicers.
    A TimelineError aborts with its mapped status and ``error-*`` trailing
    metadata; anything else aborts with INTERNAL.

    Usage:
        @grpc_error_handler
        def CheckAccess(self, request, context):
            decision = service.check_access(request.node_id, request.subject_id)
            ...
    """
    if inspect.iscoroutinefunction(method):

        @functools.wraps(method)
        async def async_wrapper(self, request, context):
            try:
                return await method(self, request, context)
            except Exception as e:
                from grpc.aio import AbortError

                if isinstance(e, AbortError):
                    raise
                await context.abort(*_abort_arguments(method.__name__, e, context))

        return async_wrapper

    @functools.wraps(method)
    def wrapper(self, request, context):
        try:
            return method(self, request, context)
        except Exception as e:
            context.abort(*_abort_arguments(method.__name__, e, context))

    return wrapper
