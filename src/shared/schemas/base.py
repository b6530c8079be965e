from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class BaseSchema(BaseModel):
    """Base Pydantic schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class ErrorDetail(BaseSchema):
    """Error detail for a specific field."""

    field: str | None = None
    message: str


class SuccessResponse(BaseSchema, Generic[T]):
    """Standard success response wrapper."""

    success: bool = True
    data: T
    message: str | None = None


# Alias for cleaner API usage
ApiResponse = SuccessResponse


class ErrorResponse(BaseSchema):
    """Standard error response wrapper."""

    success: bool = False
    data: None = None
    message: str
    errors: list[ErrorDetail] = []
