"""Pydantic schemas for attachments."""

import uuid
from datetime import datetime

from pydantic import Field

from src.core.attachments.models import AttachmentStatus, EntityType
from src.shared.schemas.base import BaseSchema


class AttachmentRegister(BaseSchema):
    """Metadata sent after the client finished uploading the blob."""

    entity_type: EntityType
    file_key: str = Field(..., min_length=1, max_length=1024)
    file_name: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(..., gt=0)
    content_type: str = Field(..., min_length=1, max_length=100)


class AttachmentResponse(BaseSchema):
    id: uuid.UUID
    entity_type: EntityType
    entity_id: uuid.UUID | None
    status: AttachmentStatus
    file_name: str
    file_url: str
    file_size: int
    content_type: str
    uploaded_by: uuid.UUID
    expires_at: datetime | None
    created_at: datetime
