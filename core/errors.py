# core/errors.py
"""
Application error taxonomy for the newsletter service

Every error that reaches the HTTP layer is an AppError carrying a
machine-readable type and the status code it maps to.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(Enum):
    """Error categories surfaced to API clients"""
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    DATABASE = "DATABASE"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE"
    NEWSLETTER = "NEWSLETTER"
    UNKNOWN = "UNKNOWN"


class AppError(Exception):
    """Base exception for all handled application errors"""

    def __init__(self,
                 message: str,
                 error_type: ErrorType = ErrorType.UNKNOWN,
                 status_code: int = 500,
                 original_error: Optional[Exception] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error
        self.context = context or {}

    @classmethod
    def validation(cls, message: str, context: Optional[Dict[str, Any]] = None) -> 'ValidationError':
        return ValidationError(message, context=context)

    @classmethod
    def not_found(cls, message: str = 'Resource not found') -> 'NotFoundError':
        return NotFoundError(message)

    @classmethod
    def authentication(cls, message: str = 'Authentication required') -> 'AppError':
        return cls(message, ErrorType.AUTHENTICATION, 401)

    @classmethod
    def database(cls, message: str, original_error: Optional[Exception] = None) -> 'AppError':
        return cls(message, ErrorType.DATABASE, 500, original_error=original_error)

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        """Serialize for a JSON error response"""
        body = {
            'error': self.message,
            'type': self.error_type.value,
        }
        if include_details:
            if self.original_error is not None:
                body['originalError'] = {
                    'message': str(self.original_error),
                    'name': type(self.original_error).__name__,
                }
            if self.context:
                body['context'] = self.context
        return body


class ValidationError(AppError):
    """Missing or malformed input; never reaches the transport"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorType.VALIDATION, 400, context=context)


class NotFoundError(AppError):
    """Requested record does not exist"""

    def __init__(self, message: str = 'Resource not found'):
        super().__init__(message, ErrorType.NOT_FOUND, 404)


class CorruptedProgressError(AppError):
    """Persisted sending progress could not be parsed or has the wrong shape"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, ErrorType.NEWSLETTER, 500, original_error=original_error)
