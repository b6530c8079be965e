from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Validation error."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403)


class DuplicateError(AppException):
    """Duplicate resource."""

    def __init__(self, resource: str, field: str, value: Any):
        message = f"{resource} with {field}={value} already exists"
        super().__init__(message=message, status_code=409, details={"field": field, "value": value})


class UnavailableError(AppException):
    """Storage or blob backend failed or timed out."""

    def __init__(self, message: str = "Service temporarily unavailable", operation: str | None = None):
        details = {"operation": operation} if operation else {}
        super().__init__(message=message, status_code=503, details=details)
