"""
Custom exceptions for the scan station.

Exception Hierarchy:
    ScanStationError (base)
    ├── ConfigurationError       - Invalid settings (startup failure)
    ├── InvalidPackageCodeError  - Scanned code is malformed (local, never sent)
    ├── IllegalTransitionError   - Action not legal for state/role (local, never sent)
    ├── NoCachedDataError        - Offline with no cached snapshot (hard stop)
    ├── RemoteError              - Anything coming back from the package API
    │   ├── NetworkError         - Transport failure (retryable, triggers queuing)
    │   │   └── RemoteTimeoutError - Call exceeded its bounded timeout
    │   └── ApplicationError     - Server rejected a business rule (not retryable)
    │       └── PackageNotFoundError
    └── StorageError             - Persistence substrate failure
        └── QueueFullError       - Pending queue bound reached

Usage:
    Startup errors (ConfigurationError, StorageError on open) cause the app to fail fast.
    Everything else is converted into a ScanOutcome by the executor and surfaced
    to the operator; nothing is raised through to the UI layer.
"""

from typing import Optional, Dict, Any


class ScanStationError(Exception):
    """
    Base exception for all scan station errors.

    All custom exceptions inherit from this class, allowing callers to catch
    all application-specific errors with a single except clause if needed.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context for debugging
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# STARTUP ERRORS - Application will not start if these occur
# =============================================================================

class ConfigurationError(ScanStationError):
    """
    A configuration value is missing or cannot be parsed.

    This is a FATAL error raised while building the engine from Config.
    """

    def __init__(self, setting: str, value: Any, reason: str):
        message = f"Invalid setting {setting}={value!r}: {reason}"
        details = {"setting": setting, "value": value}
        super().__init__(message, details)
        self.setting = setting


# =============================================================================
# LOCAL PRECONDITION ERRORS - Resolved before any network call
# =============================================================================

class InvalidPackageCodeError(ScanStationError):
    """Scanned value is not a package code (expected PKG-<ALNUM>-<YYYYMMDD>)."""

    def __init__(self, code: str):
        super().__init__(
            f"'{code}' is not a valid package code",
            {"package_code": code, "expected_format": "PKG-<ALNUM>-<YYYYMMDD>"},
        )
        self.code = code


class IllegalTransitionError(ScanStationError):
    """
    The requested action is not in the resolved action set.

    Raised by the local precondition check, so it never reaches the network
    and never touches the pending queue.
    """

    def __init__(self, code: str, action_type: str, state: str, role: str):
        message = f"'{action_type}' is not allowed for a {state} package as {role}"
        details = {
            "package_code": code,
            "action_type": action_type,
            "state": state,
            "role": role,
        }
        super().__init__(message, details)
        self.code = code
        self.action_type = action_type
        self.state = state
        self.role = role


class NoCachedDataError(ScanStationError):
    """
    Device is offline and there is no cached snapshot for the package.

    There is nothing to resolve actions against; the operator must be told
    no offline data exists.
    """

    def __init__(self, code: str):
        details = {
            "package_code": code,
            "resolution": "Reconnect and scan the package again to cache it for offline use",
        }
        super().__init__(f"No offline data for package {code}", details)
        self.code = code


# =============================================================================
# REMOTE ERRORS - Raised by the package API client
# =============================================================================

class RemoteError(ScanStationError):
    """Base class for failures reported while talking to the package API."""

    retryable = False


class NetworkError(RemoteError):
    """
    Transport-level failure: unreachable host, reset connection, 5xx.

    These are retryable. The executor queues the action and the sync engine
    replays it on the next connectivity transition.
    """

    retryable = True

    def __init__(self, message: str, operation: str = "", status_code: Optional[int] = None):
        details: Dict[str, Any] = {"operation": operation}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.operation = operation
        self.status_code = status_code


class RemoteTimeoutError(NetworkError):
    """A package API call exceeded its bounded timeout."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Package API {operation} timed out after {timeout_seconds:.1f}s",
            operation=operation,
        )
        self.details["timeout_seconds"] = timeout_seconds
        self.timeout_seconds = timeout_seconds


class ApplicationError(RemoteError):
    """
    The server explicitly rejected the request (business rule, 4xx).

    Not retryable: replaying a rejected business rule will not help. The
    server's message is surfaced verbatim to the operator.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "",
        status_code: Optional[int] = None,
        operation: str = "",
    ):
        details: Dict[str, Any] = {"operation": operation}
        if error_code:
            details["error_code"] = error_code
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.error_code = error_code
        self.status_code = status_code
        self.operation = operation


class PackageNotFoundError(ApplicationError):
    """The package API has no package with this code."""

    def __init__(self, code: str):
        super().__init__(
            f"Package {code} not found",
            error_code="PACKAGE_NOT_FOUND",
            status_code=404,
            operation="fetch_package",
        )
        self.code = code


# =============================================================================
# STORAGE ERRORS - Fatal to the operation, not to the process
# =============================================================================

class StorageError(ScanStationError):
    """The persistence substrate failed to read or write a record."""

    def __init__(self, message: str, key: str = ""):
        super().__init__(message, {"key": key} if key else None)
        self.key = key


class QueueFullError(StorageError):
    """
    The pending action queue reached its bound under the 'reject' policy.

    The scan is reported as failed; nothing already queued is dropped.
    """

    def __init__(self, max_size: int):
        super().__init__(f"Pending action queue is full ({max_size} actions)")
        self.details["max_size"] = max_size
        self.details["resolution"] = "Reconnect to sync queued actions or discard stale ones"
        self.max_size = max_size
