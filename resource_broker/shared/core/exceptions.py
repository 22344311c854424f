from typing import Optional, Dict, Any

from resource_broker.shared.core.redaction import redact_secrets, sanitize_message


class BrokerException(Exception):
    """
    Base exception for all broker errors.

    Message and details are sanitized on construction so no secret material
    crosses the broker boundary.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        message = sanitize_message(message)
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = redact_secrets(details or {})

    def __str__(self) -> str:
        return self.message


class ConfigurationError(BrokerException):
    """Raised when resource or broker configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class ResourceNotFoundError(BrokerException):
    """Raised when no resource (or sub-resource) with the requested id exists."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class ResourceInactiveError(BrokerException):
    """Raised when a resource exists but is configured with active=false."""
    def __init__(self, message: str, code: str = "inactive", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class AuthenticationFailed(BrokerException):
    """Raised when a credential exchange fails."""
    def __init__(self, message: str, code: str = "auth_failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class RefreshRejected(AuthenticationFailed):
    """Raised when the identity provider rejects a refresh token."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="refresh_rejected", details=details)


class AuthenticationCancelled(AuthenticationFailed):
    """Raised into a pending interactive login when the credential is logged out."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="auth_cancelled", details=details)


class AuthenticationTimeout(BrokerException):
    """Raised when the interactive login is not completed before its deadline."""
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="auth_timeout", details=details)


class Unauthorized(BrokerException):
    """Raised when a backend answers 401 for the credential in use."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="unauthorized", details=details)


class PoolTimeout(BrokerException):
    """Raised when no pooled connection became available in time."""
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="pool_timeout", details=details)


class ConnectionUnavailable(BrokerException):
    """Raised when a physical connection cannot be opened or kept healthy."""
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="connection_unavailable", details=details)


class QueryRejected(BrokerException):
    """Raised when the gatekeeper denies an operation. Never retried."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="rejected", details=details)


class QueryTimeout(BrokerException):
    """Raised when an operation exceeds its execution budget."""
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="timeout", details=details)


class QueryExecutionError(BrokerException):
    """Raised when a validated read-only operation fails in the backend."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="query_failed", details=details)
