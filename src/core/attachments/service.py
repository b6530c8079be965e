"""Attachment lifecycle: register TEMP uploads, confirm them against owners, release them."""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.attachments.models import Attachment, AttachmentStatus, EntityType
from src.core.attachments.store import AttachmentStore
from src.core.config import settings
from src.core.exceptions import (
    AppException,
    AuthorizationError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from src.core.storage import BlobGateway, extract_storage_key
from src.shared.utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


def unique_ids(ids: Iterable[uuid.UUID]) -> list[uuid.UUID]:
    """Drop duplicate ids, keeping first-seen order."""
    return list(dict.fromkeys(ids))


@dataclass(frozen=True)
class ReleaseTarget:
    """The parts of an attachment needed to release it, detached from any session."""

    id: uuid.UUID
    file_url: str


class AttachmentLifecycle:
    """
    State machine for attachments: TEMP -> CONFIRMED, or deleted.

    All store and blob calls are bounded by ``timeout`` seconds. Raw SQLAlchemy
    errors and timeouts become ``UnavailableError``; nothing driver-specific
    leaks past this class. Methods that write commit or roll back the session's
    current transaction, so callers must not keep uncommitted work on it.
    """

    def __init__(
        self,
        db: AsyncSession,
        blob_gateway: BlobGateway,
        clock: Clock | None = None,
        timeout: float | None = None,
        temp_ttl: timedelta | None = None,
    ):
        self.db = db
        self.store = AttachmentStore(db)
        self.blob_gateway = blob_gateway
        self.clock = clock or system_clock
        self.timeout = timeout if timeout is not None else settings.attachment_operation_timeout_seconds
        self.temp_ttl = temp_ttl or timedelta(minutes=settings.attachment_temp_ttl_minutes)

    @asynccontextmanager
    async def _storage_call(self, operation: str) -> AsyncIterator[None]:
        try:
            async with asyncio.timeout(self.timeout):
                yield
        except AppException:
            await self._rollback()
            raise
        except (SQLAlchemyError, TimeoutError) as exc:
            await self._rollback()
            logger.error("Attachment %s failed: %r", operation, exc)
            raise UnavailableError(
                f"Attachment storage unavailable during {operation}", operation=operation
            ) from exc

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as exc:
            logger.warning("Rollback after failed attachment operation also failed: %r", exc)

    # --- Registration ---

    async def register_temp(
        self,
        entity_type: EntityType,
        file_name: str,
        file_url: str,
        file_size: int,
        content_type: str,
        uploaded_by: uuid.UUID,
    ) -> Attachment:
        """Persist a TEMP, unowned attachment that expires after the TTL."""
        attachment = Attachment(
            id=uuid.uuid4(),
            entity_type=EntityType(entity_type).value,
            entity_id=None,
            status=AttachmentStatus.TEMP.value,
            file_name=file_name,
            file_url=file_url,
            file_size=file_size,
            content_type=content_type,
            uploaded_by=uploaded_by,
            expires_at=self.clock.now() + self.temp_ttl,
        )
        async with self._storage_call("register"):
            await self.store.create(attachment)
            await self.db.commit()

        logger.info(
            "Registered temporary attachment %s (%s, %s), expires at %s",
            attachment.id,
            attachment.entity_type,
            attachment.file_name,
            attachment.expires_at,
        )
        return attachment

    # --- Lookups ---

    async def get_attachment(self, attachment_id: uuid.UUID) -> Attachment:
        async with self._storage_call("lookup"):
            attachment = await self.store.find_by_id(attachment_id)
        if attachment is None:
            raise NotFoundError("Attachment", attachment_id)
        return attachment

    async def get_attachments(self, ids: Sequence[uuid.UUID]) -> list[Attachment]:
        async with self._storage_call("lookup"):
            return await self.store.find_by_ids(unique_ids(ids))

    async def list_for_entity(self, entity_type: EntityType, entity_id: uuid.UUID) -> list[Attachment]:
        async with self._storage_call("lookup"):
            return await self.store.find_by_entity(entity_type, entity_id)

    async def find_expired_temp(self, now: datetime) -> list[Attachment]:
        async with self._storage_call("expiry scan"):
            return await self.store.find_expired_temp(now)

    # --- Confirmation ---

    async def validate_for_confirm(self, ids: Sequence[uuid.UUID], entity_type: EntityType) -> None:
        """
        Fail fast on obviously bad attachment ids before other work is committed.

        Read only. The result can be stale by the time ``confirm_batch`` runs;
        only the confirm count decides whether binding succeeded.
        """
        ids = unique_ids(ids)
        if not ids:
            return

        async with self._storage_call("validate"):
            attachments = await self.store.find_by_ids(ids)

        found = {attachment.id for attachment in attachments}
        missing = [attachment_id for attachment_id in ids if attachment_id not in found]
        if missing:
            raise NotFoundError("Attachment", missing[0])

        for attachment in attachments:
            if not attachment.is_temp:
                raise ValidationError(
                    f"Attachment {attachment.id} is not in temporary status and cannot be reused",
                    field="attachment_ids",
                )
            if attachment.entity_type != entity_type:
                raise ValidationError(
                    f"Attachment {attachment.id} was uploaded for {attachment.entity_type}, not {entity_type}",
                    field="attachment_ids",
                )

    async def confirm_batch(
        self,
        ids: Sequence[uuid.UUID],
        entity_type: EntityType,
        entity_id: uuid.UUID,
    ) -> None:
        """Bind every id to the owner, or none of them."""
        ids = unique_ids(ids)
        if not ids:
            return

        async with self._storage_call("confirm"):
            updated = await self.store.confirm_batch(ids, entity_type, entity_id)
            if updated != len(ids):
                logger.warning(
                    "Confirmation of %d attachment(s) for %s %s matched only %d; rolled back",
                    len(ids),
                    entity_type,
                    entity_id,
                    updated,
                )
                raise ValidationError(
                    f"Expected to confirm {len(ids)} attachment(s) but only {updated} were "
                    "temporary and of the right type",
                    field="attachment_ids",
                )
            await self.db.commit()

        logger.info("Confirmed %d attachment(s) for %s %s", len(ids), entity_type, entity_id)

    # --- Deletion ---

    async def _delete_blob(self, target: Attachment | ReleaseTarget) -> None:
        """Best-effort blob removal; failures are logged, never raised."""
        key = extract_storage_key(target.file_url)
        if not key:
            logger.warning(
                "Cannot derive storage key for attachment %s from %s; skipping blob deletion",
                target.id,
                target.file_url,
            )
            return
        try:
            async with asyncio.timeout(self.timeout):
                await self.blob_gateway.delete(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to delete blob %s for attachment %s: %r", key, target.id, exc
            )

    async def release_batch(self, attachments: Iterable[Attachment | ReleaseTarget]) -> None:
        """
        Delete blobs, then hard-delete the rows in one batch.

        Safe to call fire-and-forget: a blob failure never keeps the row, and a
        failed row delete is logged and left for the next sweep.
        """
        targets = [ReleaseTarget(id=a.id, file_url=a.file_url) for a in attachments]
        if not targets:
            return

        for target in targets:
            await self._delete_blob(target)

        ids = [target.id for target in targets]
        try:
            async with self._storage_call("release"):
                deleted = await self.store.hard_delete_batch(ids)
                await self.db.commit()
        except UnavailableError:
            logger.error("Failed to delete %d attachment row(s); will retry on next sweep", len(ids))
            return

        logger.info("Released %d attachment(s), %d row(s) removed", len(ids), deleted)

    async def discard(self, attachment_id: uuid.UUID, requested_by: uuid.UUID | None = None) -> None:
        """
        Explicitly drop one upload: best-effort blob delete, then soft delete.

        When ``requested_by`` is given only the uploader may discard.
        """
        attachment = await self.get_attachment(attachment_id)
        if requested_by is not None and attachment.uploaded_by != requested_by:
            raise AuthorizationError("Only the uploader can delete this attachment")
        await self._delete_blob(attachment)

        async with self._storage_call("discard"):
            await self.store.soft_delete(attachment.id, self.clock.now())
            await self.db.commit()

        logger.info("Discarded attachment %s", attachment.id)


class DetachedReleaser:
    """Runs ``release_batch`` outside the calling request, each batch in its own session."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_gateway: BlobGateway,
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.blob_gateway = blob_gateway
        self.clock = clock
        self._tasks: set[asyncio.Task] = set()

    def submit(self, attachments: Iterable[Attachment | ReleaseTarget]) -> asyncio.Task | None:
        # Snapshot now: the caller's session may expire these instances later.
        targets = [ReleaseTarget(id=a.id, file_url=a.file_url) for a in attachments]
        if not targets:
            return None
        task = asyncio.create_task(self._release(targets))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _release(self, targets: list[ReleaseTarget]) -> None:
        try:
            async with self.session_factory() as session:
                lifecycle = AttachmentLifecycle(session, self.blob_gateway, self.clock)
                await lifecycle.release_batch(targets)
        except Exception:
            logger.exception("Detached release of %d attachment(s) failed", len(targets))

    async def drain(self) -> None:
        """Wait for every submitted release to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
