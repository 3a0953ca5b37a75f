"""
Exception Classes - Campus Portal

Error taxonomy shared by the attendance core and the campus services.
Every exception carries a human readable message, a stable error code and
an optional details dictionary so the web layer can render a consistent
JSON error payload.
"""

from enum import Enum
from typing import Any, Dict, Optional


class CampusPortalError(Exception):
    """Base exception class for all campus portal errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'error_type': self.error_code,
            'message': self.message,
            'details': self.details,
        }


class ValidationReason(Enum):
    """Reasons a submitted attendance code cannot be redeemed."""
    NOT_FOUND = 'not_found'
    INACTIVE = 'inactive'
    EXPIRED = 'expired'
    INVALID_FORMAT = 'invalid_format'


class ValidationError(CampusPortalError):
    """Submitted input references something that cannot be used"""

    def __init__(self, reason: ValidationReason, message: Optional[str] = None, **kwargs):
        self.reason = reason
        super().__init__(
            message or f"Validation failed: {reason.value}",
            error_code=reason.value,
            **kwargs
        )


class DuplicateError(CampusPortalError):
    """The record already exists"""

    def __init__(self, message: str = "Record already exists", **kwargs):
        super().__init__(message, error_code='duplicate', **kwargs)


class StorageError(CampusPortalError):
    """Backend or transport failure; the caller may retry"""

    UNIQUE_VIOLATION = 'unique_violation'

    def __init__(self, message: str = "Storage operation failed",
                 code: str = 'storage_error', **kwargs):
        self.code = code
        super().__init__(message, error_code='storage_error', **kwargs)

    @property
    def is_unique_violation(self) -> bool:
        return self.code == self.UNIQUE_VIOLATION


class AuthorizationError(CampusPortalError):
    """Action attempted by a role lacking permission"""

    def __init__(self, message: str = "Insufficient permissions",
                 capability: Optional[str] = None, **kwargs):
        self.capability = capability
        super().__init__(message, error_code='authorization_error', **kwargs)


class InvalidInputError(CampusPortalError):
    """Create or update payload failed validation"""

    def __init__(self, message: str = "Invalid input", field: Optional[str] = None, **kwargs):
        self.field = field
        super().__init__(message, error_code='invalid_input', **kwargs)
