"""
Integration Engine Exception Hierarchy

All exceptions include code, message, and details for the audit trail
and debugging.

Exception Hierarchy:
    IntegrationError
    ├── ConfigurationError
    ├── AuthenticationError
    ├── UpstreamError
    │   └── ProviderTimeoutError
    ├── DecryptionError
    ├── ValidationError
    ├── NotFoundError
    ├── ConflictError
    └── NotSupportedError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class IntegrationError(Exception):
    """
    Base exception for all integration engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "INTEGRATION_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ConfigurationError(IntegrationError):
    """Missing or malformed configuration (keys, credentials, settings)."""
    default_code = "CONFIGURATION_ERROR"
    default_severity = "P1"


class AuthenticationError(IntegrationError):
    """A vendor rejected our credentials or token request."""
    default_code = "AUTH_FAILED"
    default_severity = "P1"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        details.update({"provider": provider})
        super().__init__(message, details=details, **kwargs)
        self.provider = provider


class UpstreamError(IntegrationError):
    """Vendor HTTP, network or payload failure."""
    default_code = "UPSTREAM_ERROR"
    default_severity = "P2"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = dict(kwargs.pop("details", None) or {})
        details.update({
            "provider": provider,
            "status_code": status_code,
        })
        super().__init__(message, details=details, **kwargs)
        self.provider = provider
        self.status_code = status_code


class ProviderTimeoutError(UpstreamError):
    """A provider call exceeded the configured time bound."""
    default_code = "PROVIDER_TIMEOUT"


class DecryptionError(IntegrationError):
    """Stored secret could not be decrypted (tampered, truncated or wrong key)."""
    default_code = "DECRYPTION_FAILED"
    default_severity = "P1"


class ValidationError(IntegrationError):
    """Caller supplied data that cannot be sent to a provider."""
    default_code = "VALIDATION_ERROR"
    default_severity = "P3"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)
        self.field = field


class NotFoundError(IntegrationError):
    """Requested provider or integration does not exist or is inactive."""
    default_code = "NOT_FOUND"
    default_severity = "P3"


class ConflictError(IntegrationError):
    """An integration for this category/provider already exists."""
    default_code = "CONFLICT"
    default_severity = "P3"


class NotSupportedError(IntegrationError):
    """Provider does not implement an optional operation."""
    default_code = "NOT_SUPPORTED"
    default_severity = "P3"

    def __init__(self, provider: str, operation: str, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        details.update({"provider": provider, "operation": operation})
        super().__init__(f"{provider} does not support {operation}", details=details, **kwargs)
        self.provider = provider
        self.operation = operation
