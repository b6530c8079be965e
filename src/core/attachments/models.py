"""Attachment model: uploaded files bound to boards, projects, comments or profiles."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import BigInteger, DateTime, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, TimestampMixin


class EntityType(StrEnum):
    """Kind of owner an attachment can be bound to."""

    BOARD = "BOARD"
    PROJECT = "PROJECT"
    COMMENT = "COMMENT"
    USER_PROFILE = "USER_PROFILE"


class AttachmentStatus(StrEnum):
    TEMP = "TEMP"
    CONFIRMED = "CONFIRMED"


class Attachment(TimestampMixin, Base):
    """
    Uploaded file metadata.

    Ownership is polymorphic: ``entity_id`` points into the table selected by
    ``entity_type``, so there is no foreign key on it. A row is TEMP (unowned,
    expiring) until confirmed against an owner, after which it never expires.
    """

    __tablename__ = "attachments"
    __table_args__ = (
        Index("ix_attachments_status_expires_at", "status", "expires_at"),
        Index("ix_attachments_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AttachmentStatus.TEMP.value
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    uploaded_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_temp(self) -> bool:
        return self.status == AttachmentStatus.TEMP.value

    @property
    def is_confirmed(self) -> bool:
        return self.status == AttachmentStatus.CONFIRMED.value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
