"""
Exception types for the report engine and its backend client.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)


class NotFoundError(ServiceError):
    """Resource not found error."""
    pass


class ConfigurationError(ServiceError):
    """Configuration error."""
    pass


class ReportInputError(ServiceError):
    """Report input rejected before any request is built (dates, filters, options)."""
    pass


class GroupingConfigError(ReportInputError):
    """Malformed grouping selection (too many levels, duplicates, unknown fields)."""
    pass


class DrillDownError(ReportInputError):
    """Cell click that cannot be resolved to a drill-down."""
    pass


class BackendError(ServiceError):
    """Reporting backend request failed (network error or non-2xx response)."""
    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        super().__init__(message, code=code, details=details)


def error_payload(exc: ServiceError, status_code: int) -> Dict[str, Any]:
    """Consistent error body for HTTP responses."""
    details = dict(exc.details)
    if exc.code:
        details.setdefault('code', exc.code)
    return {
        'error': True,
        'status_code': status_code,
        'message': exc.message,
        'details': details,
    }
