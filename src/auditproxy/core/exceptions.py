"""
Custom exceptions for AuditProxy service.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses.
"""

from typing import Any, Dict, Optional


class AuditProxyException(Exception):
    """Base exception for AuditProxy service."""
    
    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(AuditProxyException):
    """Raised when request validation fails."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_error",
            details=details,
        )


class AuthenticationError(AuditProxyException):
    """Raised when privileged log access is denied."""
    
    def __init__(
        self,
        message: str = "Unauthorized access to encrypted logs. Admin privileges required.",
    ) -> None:
        super().__init__(
            message=message,
            status_code=401,
            error_code="authentication_error",
        )


class RateLimitError(AuditProxyException):
    """Raised when the decrypted-log rate limit is exceeded."""
    
    def __init__(
        self,
        message: str = "Rate limit exceeded. Too many decryption requests.",
        retry_after: Optional[int] = None,
    ) -> None:
        details = {}
        if retry_after:
            details["retry_after"] = retry_after
            
        super().__init__(
            message=message,
            status_code=429,
            error_code="rate_limit_exceeded",
            details=details,
        )


class ForwardingError(AuditProxyException):
    """Raised when an outbound call cannot be completed."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=502,
            error_code="forwarding_error",
            details=details,
        )


class CircularRedirectError(ForwardingError):
    """Raised when a redirect chain revisits a URL."""


class TooManyRedirectsError(ForwardingError):
    """Raised when a redirect chain exceeds the configured cap."""


class PersistenceError(AuditProxyException):
    """Raised when audit log files cannot be written or read."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="persistence_error",
            details=details,
        )


class RetentionError(PersistenceError):
    """Raised when a retired log file cannot be swapped into place."""


class DecryptionError(AuditProxyException):
    """Raised when an encrypted audit line cannot be decrypted."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="decryption_error",
            details=details,
        )
