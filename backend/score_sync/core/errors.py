"""
Error taxonomy, logging and retry utilities for score synchronization.
"""

import asyncio
import logging
import random
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union


# Configure sync-specific logger
sync_logger = logging.getLogger('score_sync')


class ErrorSeverity:
    """Error severity levels for sync operations."""
    LOW = "low"           # Expected or user-initiated, no alarm
    MEDIUM = "medium"     # Record-level issue, flow continues
    HIGH = "high"         # Flow aborted
    CRITICAL = "critical" # Engine misuse


class ErrorCategory:
    """Error categories for better classification."""
    TRANSIENT = "transient"
    REMOTE_FAILURE = "remote_failure"
    TIMEOUT = "timeout"
    USER_ABORT = "user_abort"
    CANCELLED = "cancelled"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ScoreSyncError(Exception):
    """Base exception for score sync errors with enhanced metadata."""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.UNKNOWN,
        severity: str = ErrorSeverity.MEDIUM,
        scope_id: Optional[str] = None,
        operation_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.scope_id = scope_id
        self.operation_type = operation_type
        self.details = details or {}
        self.retryable = retryable
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            'error_type': type(self).__name__,
            'message': self.message,
            'category': self.category,
            'severity': self.severity,
            'scope_id': self.scope_id,
            'operation_type': self.operation_type,
            'details': self.details,
            'retryable': self.retryable,
            'timestamp': self.timestamp.isoformat(),
            'traceback': traceback.format_exc() if self.original_exception else None
        }


class TransientRemoteError(ScoreSyncError):
    """Network, rate limiting or 5xx-class failures worth retrying."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        **kwargs
    ):
        details = kwargs.pop('details', None) or {}
        details['status_code'] = status_code
        details['retry_after'] = retry_after
        super().__init__(
            message,
            category=ErrorCategory.TRANSIENT,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            details=details,
            **kwargs
        )
        self.status_code = status_code
        self.retry_after = retry_after


class FatalRemoteError(ScoreSyncError):
    """The remote reported a permanent failure."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop('details', None) or {}
        details['status_code'] = status_code
        super().__init__(
            message,
            category=ErrorCategory.REMOTE_FAILURE,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            details=details,
            **kwargs
        )
        self.status_code = status_code


class SyncTimeoutError(ScoreSyncError):
    """A bounded wait was exhausted."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float,
        elapsed_seconds: Optional[float] = None,
        **kwargs
    ):
        details = kwargs.pop('details', None) or {}
        details['timeout_seconds'] = timeout_seconds
        details['elapsed_seconds'] = elapsed_seconds
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            details=details,
            **kwargs
        )
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds


class UserAbortError(ScoreSyncError):
    """An upstream collaborator declined a provisioning prompt."""

    def __init__(self, message: str = "User cancelled the operation", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.USER_ABORT,
            severity=ErrorSeverity.LOW,
            retryable=False,
            **kwargs
        )


class FlowCancelledError(ScoreSyncError):
    """The host cancelled a running flow."""

    def __init__(self, message: str = "Flow cancelled", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.LOW,
            retryable=False,
            **kwargs
        )


class SyncValidationError(ScoreSyncError):
    """Flow preconditions are not met."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop('details', None) or {}
        details['field'] = field
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            details=details,
            **kwargs
        )
        self.field = field


class IllegalTransitionError(RuntimeError):
    """A state transition outside the transition table was attempted."""

    def __init__(self, from_state: str, to_state: str, allowed: List[str]):
        super().__init__(
            f"Invalid transition from {from_state} to {to_state}. "
            f"Valid transitions: {', '.join(allowed) or 'none'}"
        )
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed


def get_user_friendly_message(error: Exception) -> str:
    """Host-displayable text for an error."""
    if isinstance(error, (UserAbortError, FlowCancelledError)):
        return error.message or "Operation cancelled."
    if isinstance(error, SyncTimeoutError):
        return "The operation took too long and timed out. Please try again."
    if isinstance(error, SyncValidationError):
        return error.message
    if isinstance(error, (TransientRemoteError, FatalRemoteError)):
        status_code = error.status_code
        if status_code in (401, 403):
            return "You don't have permission to perform this action."
        if status_code == 404:
            return "The requested resource was not found."
        if status_code is not None and status_code >= 500:
            return "Canvas server error. Please try again later."
        if isinstance(error, TransientRemoteError):
            return "Canvas could not be reached. Please try again later."
        return error.message
    return "An unexpected error occurred. Please try again."


class ScoreSyncErrorHandler:
    """Central error handler for sync operations."""

    def __init__(self, max_log_entries: int = 1000):
        self._error_log: List[Dict[str, Any]] = []
        self._max_log_entries = max_log_entries

    def log_error(
        self,
        error: Union[ScoreSyncError, Exception],
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log an error with full context.

        Args:
            error: The error to log
            context: Additional context information
        """
        if isinstance(error, ScoreSyncError):
            error_dict = error.to_dict()
        else:
            error_dict = {
                'error_type': type(error).__name__,
                'message': str(error),
                'category': ErrorCategory.UNKNOWN,
                'severity': ErrorSeverity.HIGH,
                'timestamp': datetime.utcnow().isoformat(),
                'traceback': traceback.format_exc()
            }

        if context:
            error_dict.update(context)

        severity = error_dict.get('severity', ErrorSeverity.MEDIUM)
        log_message = f"Score sync error [{severity.upper()}]: {error_dict['message']}"

        if severity == ErrorSeverity.CRITICAL:
            sync_logger.critical(log_message)
        elif severity == ErrorSeverity.HIGH:
            sync_logger.error(log_message)
        elif severity == ErrorSeverity.MEDIUM:
            sync_logger.warning(log_message)
        else:
            sync_logger.info(log_message)

        self._error_log.append(error_dict)
        if len(self._error_log) > self._max_log_entries:
            self._error_log.pop(0)

    def get_recent_errors(
        self,
        limit: int = 50,
        severity_filter: Optional[str] = None,
        category_filter: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get recent errors with optional filtering."""
        filtered_errors = self._error_log.copy()

        if severity_filter:
            filtered_errors = [e for e in filtered_errors if e.get('severity') == severity_filter]

        if category_filter:
            filtered_errors = [e for e in filtered_errors if e.get('category') == category_filter]

        return filtered_errors[-limit:]


# Retry mechanism with exponential backoff
class RetryConfig:
    """Configuration for retry attempts."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


async def retry_on_error(
    func: Callable,
    retry_config: RetryConfig,
    retryable_errors: tuple = (TransientRemoteError,),
    *args,
    **kwargs
) -> Any:
    """
    Retry function execution on specific errors.

    Args:
        func: Coroutine function to retry
        retry_config: Retry configuration
        retryable_errors: Tuple of error types that should trigger retry
        *args: Arguments for function
        **kwargs: Keyword arguments for function

    Returns:
        Function result
    """
    last_exception = None

    for attempt in range(retry_config.max_attempts):
        try:
            return await func(*args, **kwargs)

        except retryable_errors as e:
            last_exception = e

            if attempt == retry_config.max_attempts - 1:
                break

            delay = min(
                retry_config.base_delay * (retry_config.exponential_base ** attempt),
                retry_config.max_delay
            )

            if retry_config.jitter:
                delay *= (0.5 + random.random())

            retry_after = getattr(e, 'retry_after', None)
            if retry_after:
                delay = max(delay, retry_after)

            sync_logger.info(
                f"Retrying operation after error (attempt {attempt + 1}/{retry_config.max_attempts}): {e}"
            )

            await asyncio.sleep(delay)

    raise last_exception
