from src.core.exceptions.base import (
    AppException,
    AuthorizationError,
    NotFoundError,
    ValidationError,
    DuplicateError,
    UnavailableError,
)

__all__ = [
    "AppException",
    "AuthorizationError",
    "NotFoundError",
    "ValidationError",
    "DuplicateError",
    "UnavailableError",
]
