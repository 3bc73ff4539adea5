"""
Standardized error handling for the maintenance routine.

Every component raises RoutineError with a classification code so the
orchestrator can decide between retrying, failing a step, or escalating a
GitOps restoration failure.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """Error classification codes."""

    # Infrastructure errors
    TRANSIENT_NETWORK = "TRANSIENT_NETWORK"
    TIMEOUT = "TIMEOUT"
    KUBERNETES_API = "KUBERNETES_API"
    GITOPS_API = "GITOPS_API"
    STORAGE = "STORAGE"

    # Protocol and reference errors
    PROTOCOL = "PROTOCOL"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    AUTHENTICATION = "AUTHENTICATION"
    CONFIGURATION = "CONFIGURATION"

    # Operation errors
    BACKUP_OPERATION = "BACKUP_OPERATION"
    JOB_FAILED = "JOB_FAILED"
    RESTORATION_FAILURE = "RESTORATION_FAILURE"

    UNKNOWN = "UNKNOWN"


class Severity(Enum):
    """Error severity levels."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


_SEVERITIES = {
    ErrorCode.RESTORATION_FAILURE: Severity.CRITICAL,
    ErrorCode.KUBERNETES_API: Severity.HIGH,
    ErrorCode.GITOPS_API: Severity.HIGH,
    ErrorCode.BACKUP_OPERATION: Severity.HIGH,
    ErrorCode.JOB_FAILED: Severity.HIGH,
    ErrorCode.RESOURCE_NOT_FOUND: Severity.HIGH,
    ErrorCode.AUTHENTICATION: Severity.HIGH,
    ErrorCode.CONFIGURATION: Severity.HIGH,
    ErrorCode.TRANSIENT_NETWORK: Severity.MEDIUM,
    ErrorCode.TIMEOUT: Severity.MEDIUM,
    ErrorCode.STORAGE: Severity.MEDIUM,
    ErrorCode.PROTOCOL: Severity.MEDIUM,
}

# Only transient network failures are worth a second attempt.
_RETRYABLE = {ErrorCode.TRANSIENT_NETWORK}


class RoutineError(Exception):
    """Standardized error with rich context."""

    def __init__(
        self,
        code: ErrorCode,
        component: str,
        operation: str,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.component = component
        self.operation = operation
        self.message = message
        self.cause = cause
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

        self.severity = _SEVERITIES.get(code, Severity.MEDIUM)
        self.retryable = code in _RETRYABLE

        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message."""
        if self.cause:
            return f"[{self.code.value}] {self.message}: {self.cause}"
        return f"[{self.code.value}] {self.message}"

    def with_context(self, key: str, value: Any) -> 'RoutineError':
        """Add context to the error."""
        self.context[key] = value
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            'code': self.code.value,
            'message': self.message,
            'severity': self.severity.value,
            'context': self.context,
            'timestamp': self.timestamp.isoformat(),
            'component': self.component,
            'operation': self.operation,
            'retryable': self.retryable,
            'cause': str(self.cause) if self.cause else None
        }


class MultiError(Exception):
    """Holds multiple errors with context."""

    def __init__(self, component: str, operation: str):
        self.errors: List[RoutineError] = []
        self.component = component
        self.operation = operation
        super().__init__()

    def add(self, error: RoutineError) -> None:
        """Add an error to the MultiError."""
        self.errors.append(error)

    def has_errors(self) -> bool:
        """Return True if there are any errors."""
        return len(self.errors) > 0

    def __str__(self) -> str:
        if len(self.errors) == 0:
            return "no errors"
        if len(self.errors) == 1:
            return str(self.errors[0])
        return f"multiple errors ({len(self.errors)}): {self.errors[0]}"


# Convenience constructors for the common error kinds
def new_transient_error(component: str, operation: str, message: str, cause: Exception = None) -> RoutineError:
    """Create a retryable network error."""
    return RoutineError(ErrorCode.TRANSIENT_NETWORK, component, operation, message, cause)


def new_timeout_error(component: str, operation: str, message: str, cause: Exception = None) -> RoutineError:
    """Create a deadline-exceeded error."""
    return RoutineError(ErrorCode.TIMEOUT, component, operation, message, cause)


def new_protocol_error(operation: str, message: str, cause: Exception = None) -> RoutineError:
    """Create a console protocol error."""
    return RoutineError(ErrorCode.PROTOCOL, "console", operation, message, cause)


def new_not_found_error(component: str, operation: str, message: str, cause: Exception = None) -> RoutineError:
    """Create a misconfigured-reference error."""
    return RoutineError(ErrorCode.RESOURCE_NOT_FOUND, component, operation, message, cause)


def new_configuration_error(operation: str, message: str, cause: Exception = None) -> RoutineError:
    """Create configuration-related errors."""
    return RoutineError(ErrorCode.CONFIGURATION, "config", operation, message, cause)


def new_restoration_error(app: str, message: str, cause: Exception = None) -> RoutineError:
    """Create the error raised when GitOps reconciliation cannot be restored."""
    return RoutineError(
        ErrorCode.RESTORATION_FAILURE, "gitops", "resume", message, cause
    ).with_context("application", app)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    backoff: float = 1.0,
    description: str = "operation",
) -> T:
    """Run an async operation, retrying once after a transient network error.

    Args:
        operation: Zero-argument coroutine factory
        backoff: Seconds to wait before the single retry
        description: Name used in log messages

    Returns:
        The operation's result
    """
    try:
        return await operation()
    except RoutineError as e:
        if not e.retryable:
            raise
        logger.warning(f"{description} failed transiently ({e}); retrying once in {backoff:.1f}s")
    await asyncio.sleep(backoff)
    return await operation()


class ErrorHandler:
    """Centralized error handling and logging."""

    def __init__(self, component: str, logger: Optional[logging.Logger] = None):
        self.component = component
        self.logger = logger

    def handle(self, error: Exception, operation: str) -> RoutineError:
        """Process and log a standardized error."""
        std_err = self.to_routine_error(error, operation)
        self._log_error(std_err)
        return std_err

    def to_routine_error(self, error: Exception, operation: str) -> RoutineError:
        """Convert any error to a RoutineError."""
        if isinstance(error, RoutineError):
            return error
        return RoutineError(ErrorCode.UNKNOWN, self.component, operation, "unexpected error", error)

    def _log_error(self, error: RoutineError) -> None:
        """Log the error based on its severity."""
        if not self.logger:
            return

        log_data = {
            'error_code': error.code.value,
            'severity': error.severity.value,
            'retryable': error.retryable,
            'error_context': error.context
        }

        if error.severity in [Severity.CRITICAL, Severity.HIGH]:
            self.logger.error(f"{error.operation}: {error}", extra=log_data, exc_info=error.cause)
        elif error.severity == Severity.MEDIUM:
            self.logger.warning(f"{error.operation}: {error}", extra=log_data)
        else:
            self.logger.info(f"{error.operation}: {error}", extra=log_data)
