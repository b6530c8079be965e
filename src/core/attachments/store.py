"""Persistence for attachment rows. Raises raw SQLAlchemy errors; callers own commit/rollback."""

import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.attachments.models import Attachment, AttachmentStatus, EntityType
from src.core.exceptions import DuplicateError


class AttachmentStore:
    """Queries and writes over the ``attachments`` table. Soft-deleted rows are never returned."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _live(self):
        return select(Attachment).where(Attachment.deleted_at.is_(None))

    async def create(self, attachment: Attachment) -> Attachment:
        self.db.add(attachment)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateError("Attachment", "id", attachment.id) from exc
        await self.db.refresh(attachment)
        return attachment

    async def find_by_id(self, attachment_id: uuid.UUID) -> Attachment | None:
        result = await self.db.execute(
            self._live()
            .where(Attachment.id == attachment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_ids(self, ids: Sequence[uuid.UUID]) -> list[Attachment]:
        """Rows matching any of ``ids``. A result shorter than ``ids`` means some were not found."""
        if not ids:
            return []
        result = await self.db.execute(
            self._live()
            .where(Attachment.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_by_entity(self, entity_type: EntityType, entity_id: uuid.UUID) -> list[Attachment]:
        """Confirmed attachments bound to one owner, newest first."""
        result = await self.db.execute(
            self._live()
            .where(
                Attachment.entity_type == entity_type,
                Attachment.entity_id == entity_id,
                Attachment.status == AttachmentStatus.CONFIRMED.value,
            )
            .order_by(Attachment.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_expired_temp(self, now: datetime) -> list[Attachment]:
        result = await self.db.execute(
            self._live()
            .where(
                Attachment.status == AttachmentStatus.TEMP.value,
                Attachment.expires_at < now,
            )
            .order_by(Attachment.expires_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def confirm_batch(
        self,
        ids: Sequence[uuid.UUID],
        entity_type: EntityType,
        entity_id: uuid.UUID,
    ) -> int:
        """
        Bind TEMP rows of ``entity_type`` to ``entity_id`` in one conditional UPDATE.

        Rows are locked in id order first so overlapping batches queue behind each
        other instead of deadlocking. Returns the number of rows updated; the caller
        must roll back when it is short of ``len(ids)``.
        """
        if not ids:
            return 0

        await self.db.execute(
            select(Attachment.id)
            .where(Attachment.id.in_(ids))
            .order_by(Attachment.id)
            .with_for_update()
        )
        result = await self.db.execute(
            update(Attachment)
            .where(
                Attachment.id.in_(ids),
                Attachment.status == AttachmentStatus.TEMP.value,
                Attachment.entity_type == entity_type,
                Attachment.deleted_at.is_(None),
            )
            .values(
                entity_id=entity_id,
                status=AttachmentStatus.CONFIRMED.value,
                expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def soft_delete_batch(self, ids: Sequence[uuid.UUID], deleted_at: datetime) -> int:
        """Mark live rows deleted. Already-deleted or missing ids are skipped."""
        if not ids:
            return 0
        result = await self.db.execute(
            update(Attachment)
            .where(Attachment.id.in_(ids), Attachment.deleted_at.is_(None))
            .values(deleted_at=deleted_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def soft_delete(self, attachment_id: uuid.UUID, deleted_at: datetime) -> bool:
        return await self.soft_delete_batch([attachment_id], deleted_at) == 1

    async def hard_delete_batch(self, ids: Sequence[uuid.UUID]) -> int:
        if not ids:
            return 0
        result = await self.db.execute(
            delete(Attachment)
            .where(Attachment.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
