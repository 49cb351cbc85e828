"""
Structured error types for rulesync.

Provides a typed hierarchy of errors carrying retry semantics and context,
plus the closed set of error kinds that the schedule/namespace transport
adapters translate raw service status codes into before anything reaches the
sync or polling logic.

Manifesto:
    - **Typed Error Hierarchy:** Validation, service, store and workflow
      failures are distinct types
    - **Explicit Retry Semantics:** Each error knows if it's retryable; the
      activity executor consults ``retryable`` before backing off
    - **Closed Transport Kinds:** Numeric status codes never leak past the
      adapter boundary; callers branch on ``ErrorKind`` subclasses
    - **Error Chaining:** Preserve original exceptions as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       RulesyncError                             │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  ValidationError   ConfigError       WorkflowError              │
        │  (VALIDATION)      (CONFIG)          (ORCHESTRATION)            │
        │                                                                 │
        │  StoreError        ServiceError(kind)                           │
        │  (DATABASE,        (SERVICE)                                    │
        │   retryable)            │                                       │
        │        ┌────────────┬───┴─────────┬─────────────────┐           │
        │   NotFoundError ConflictError PermissionDenied TransientInfra   │
        │   (NOT_FOUND)  (ALREADY_EXISTS)  (PERMISSION_    (UNAVAILABLE,  │
        │                                   DENIED)         retryable)    │
        └─────────────────────────────────────────────────────────────────┘

Usage:
    from rulesync.core.errors import NotFoundError, error_from_status

    try:
        await handle.update(mutator)
    except NotFoundError:
        await service.create(definition)

Tags:
    error-handling, exception-hierarchy, retry-logic, transport-errors
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    NETWORK = "NETWORK"  # Connection, timeout, unavailable
    DATABASE = "DATABASE"  # Rule/notification store failures
    SERVICE = "SERVICE"  # Schedule / namespace service responses
    VALIDATION = "VALIDATION"  # Malformed rules, trigger configs
    CONFIG = "CONFIG"  # Missing or invalid settings
    AUTH = "AUTH"  # Permission denied
    ORCHESTRATION = "ORCHESTRATION"  # Workflow and polling failures
    INTERNAL = "INTERNAL"  # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


class ErrorKind(str, Enum):
    """Closed set of transport-level outcomes from external services.

    Only ``NOT_FOUND`` and ``ALREADY_EXISTS`` alter control flow in the sync
    and provisioning logic; everything else propagates.
    """

    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNAVAILABLE = "UNAVAILABLE"
    OTHER = "OTHER"


# gRPC status codes reported by the schedule and namespace services
STATUS_CODE_KINDS: dict[int, ErrorKind] = {
    5: ErrorKind.NOT_FOUND,
    6: ErrorKind.ALREADY_EXISTS,
    7: ErrorKind.PERMISSION_DENIED,
    14: ErrorKind.UNAVAILABLE,
}


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging."""

    rule_id: int | str | None = None
    enterprise_id: str | None = None
    schedule_id: str | None = None
    namespace: str | None = None
    activity: str | None = None
    status_code: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["rule_id", "enterprise_id", "schedule_id", "namespace",
                    "activity", "status_code"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RulesyncError(Exception):
    """
    Base exception for all rulesync errors.

    Every instance carries a category, a retryable flag, an ``ErrorContext``
    and an optional chained cause. Subclasses set ``default_category`` and
    ``default_retryable``.

    Examples:
        >>> error = RulesyncError("Something went wrong")
        >>> error.retryable
        False
        >>> error.with_context(rule_id=7).context.rule_id
        7
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RulesyncError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION / CONFIG
# =============================================================================


class ValidationError(RulesyncError):
    """
    Rule or trigger configuration is malformed.

    Never retryable - the rule must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class ConfigError(RulesyncError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# SERVICE (TRANSPORT BOUNDARY) ERRORS
# =============================================================================


class ServiceError(RulesyncError):
    """Error reported by the schedule or namespace service.

    ``kind`` is the closed transport classification; ``status_code`` keeps
    the raw code for logs only.
    """

    default_category = ErrorCategory.SERVICE
    default_retryable = False
    default_kind: ErrorKind = ErrorKind.OTHER

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        status_code: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.kind = kind or self.default_kind
        self.status_code = status_code
        if status_code is not None:
            self.context.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["kind"] = self.kind.value
        return result


class NotFoundError(ServiceError):
    """Target schedule, namespace or rule is absent."""

    default_kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """Target already exists (lost a creation race)."""

    default_kind = ErrorKind.ALREADY_EXISTS


class PermissionDeniedError(ServiceError):
    """Caller is not allowed to perform the operation."""

    default_category = ErrorCategory.AUTH
    default_kind = ErrorKind.PERMISSION_DENIED


class TransientInfraError(ServiceError):
    """Service unavailable or network failure. Retryable."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True
    default_kind = ErrorKind.UNAVAILABLE


_KIND_ERRORS: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.ALREADY_EXISTS: ConflictError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.UNAVAILABLE: TransientInfraError,
    ErrorKind.OTHER: ServiceError,
}


def kind_from_status(code: int | None) -> ErrorKind:
    """Map a raw service status code onto ``ErrorKind``."""
    if code is None:
        return ErrorKind.OTHER
    return STATUS_CODE_KINDS.get(int(code), ErrorKind.OTHER)


def error_from_status(
    code: int | None,
    message: str,
    *,
    cause: Exception | None = None,
    **context: Any,
) -> ServiceError:
    """Build the ``ServiceError`` subclass matching a raw status code."""
    kind = kind_from_status(code)
    error = _KIND_ERRORS[kind](message, kind=kind, status_code=code, cause=cause)
    if context:
        error.with_context(**context)
    return error


# =============================================================================
# STORE / WORKFLOW ERRORS
# =============================================================================


class StoreError(RulesyncError):
    """Rule or notification store failure (query, connection)."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class WorkflowError(RulesyncError):
    """Workflow-level failure. Not retried by the activity layer."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RulesyncError):
        return error.retryable
    # Plain network errors from drivers are usually transient
    return isinstance(error, (ConnectionError, TimeoutError, OSError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, RulesyncError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorKind",
    "STATUS_CODE_KINDS",
    "ErrorContext",
    "RulesyncError",
    "ValidationError",
    "ConfigError",
    "ServiceError",
    "NotFoundError",
    "ConflictError",
    "PermissionDeniedError",
    "TransientInfraError",
    "StoreError",
    "WorkflowError",
    "kind_from_status",
    "error_from_status",
    "is_retryable",
    "categorize_error",
]
