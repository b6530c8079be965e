"""Entity creation/update/deletion flows that keep an owner and its attachments consistent."""

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from src.core.attachments.models import Attachment, EntityType
from src.core.attachments.service import AttachmentLifecycle, DetachedReleaser, unique_ids
from src.core.exceptions import AppException

logger = logging.getLogger(__name__)

E = TypeVar("E")


class EntityRepository(Protocol[E]):
    """Persistence of one owner kind (board, project, profile). Both calls must commit on their own."""

    async def create(self, entity: E) -> uuid.UUID: ...

    async def delete(self, entity_id: uuid.UUID) -> None: ...


@dataclass
class CreatedEntity(Generic[E]):
    entity_id: uuid.UUID
    entity: E
    attachments: list[Attachment] = field(default_factory=list)


class EntityCreationSaga(Generic[E]):
    """
    Persist an owner and bind its uploads, compensating when binding fails.

    Create: pre-flight validation -> repository.create -> confirm_batch. If the
    confirmation fails the new entity is deleted again (best effort) and the
    confirmation error is raised to the caller.
    """

    def __init__(
        self,
        lifecycle: AttachmentLifecycle,
        repository: EntityRepository[E],
        releaser: DetachedReleaser | None = None,
    ):
        self.lifecycle = lifecycle
        self.repository = repository
        self.releaser = releaser

    async def create(
        self,
        build_entity: Callable[[], E | Awaitable[E]],
        attachment_ids: Sequence[uuid.UUID] | None,
        entity_type: EntityType,
    ) -> CreatedEntity[E]:
        ids = unique_ids(attachment_ids or [])

        if ids:
            await self.lifecycle.validate_for_confirm(ids, entity_type)

        entity = build_entity()
        if inspect.isawaitable(entity):
            entity = await entity
        entity_id = await self.repository.create(entity)

        if not ids:
            return CreatedEntity(entity_id=entity_id, entity=entity)

        try:
            await self.lifecycle.confirm_batch(ids, entity_type, entity_id)
        except Exception as exc:
            logger.error(
                "Failed to confirm %d attachment(s) for %s %s, rolling back creation: %s",
                len(ids),
                entity_type,
                entity_id,
                exc,
            )
            await self._compensate(entity_type, entity_id)
            raise

        attachments: list[Attachment] = []
        try:
            attachments = await self.lifecycle.get_attachments(ids)
        except AppException as exc:
            logger.warning(
                "Failed to fetch confirmed attachments for %s %s: %s", entity_type, entity_id, exc.message
            )
        return CreatedEntity(entity_id=entity_id, entity=entity, attachments=attachments)

    async def _compensate(self, entity_type: EntityType, entity_id: uuid.UUID) -> None:
        try:
            await self.repository.delete(entity_id)
        except Exception:
            # Left for operational reconciliation; no automatic retry.
            logger.exception(
                "Failed to roll back %s %s after attachment confirmation failure; entity is orphaned",
                entity_type,
                entity_id,
            )
            return
        logger.info("Rolled back %s %s after attachment confirmation failure", entity_type, entity_id)

    async def replace_attachments(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        attachment_ids: Sequence[uuid.UUID] | None,
        detach_release: bool = False,
    ) -> list[Attachment]:
        """
        Swap an existing owner's attachment set.

        ``None`` leaves the set untouched; an empty list clears it. The owner's
        other field updates are already committed and are not rolled back when
        the new confirmation fails.
        """
        if attachment_ids is None:
            return await self.lifecycle.list_for_entity(entity_type, entity_id)

        existing = await self.lifecycle.list_for_entity(entity_type, entity_id)
        released = {attachment.id for attachment in existing}
        if existing:
            if detach_release and self.releaser is not None:
                self.releaser.submit(existing)
                logger.debug(
                    "Detached release of %d attachment(s) for %s %s", len(existing), entity_type, entity_id
                )
            else:
                await self.lifecycle.release_batch(existing)

        ids = unique_ids(attachment_ids)
        if ids:
            try:
                await self.lifecycle.confirm_batch(ids, entity_type, entity_id)
            except AppException as exc:
                logger.error(
                    "Failed to confirm new attachments during update of %s %s: %s",
                    entity_type,
                    entity_id,
                    exc.message,
                )
                raise

        current = await self.lifecycle.list_for_entity(entity_type, entity_id)
        return [attachment for attachment in current if attachment.id not in released]

    async def delete(self, entity_type: EntityType, entity_id: uuid.UUID) -> None:
        """Release an owner's attachments, then delete the owner."""
        try:
            attachments = await self.lifecycle.list_for_entity(entity_type, entity_id)
        except AppException as exc:
            logger.warning(
                "Failed to fetch attachments for deletion of %s %s: %s", entity_type, entity_id, exc.message
            )
            attachments = []

        if attachments:
            await self.lifecycle.release_batch(attachments)

        await self.repository.delete(entity_id)
