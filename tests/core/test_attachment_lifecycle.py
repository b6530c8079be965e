"""Tests for AttachmentLifecycle: registration, confirmation, release and discard."""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from src.core.attachments.models import Attachment, AttachmentStatus, EntityType
from src.core.attachments.service import AttachmentLifecycle, unique_ids
from src.core.exceptions import AuthorizationError, NotFoundError, UnavailableError, ValidationError
from tests.conftest import BUCKET_URL, TEST_USER_ID, RecordingBlobGateway


def naive(value):
    return value.replace(tzinfo=None) if value is not None else None


class SlowBlobGateway(RecordingBlobGateway):
    async def delete(self, key: str) -> None:
        await asyncio.sleep(5)


class TestRegisterTemp:
    async def test_register_creates_unowned_temp_row(self, register, clock):
        attachment = await register(EntityType.PROJECT)

        assert attachment.status == AttachmentStatus.TEMP.value
        assert attachment.entity_type == EntityType.PROJECT.value
        assert attachment.entity_id is None
        assert attachment.uploaded_by == TEST_USER_ID
        assert naive(attachment.expires_at) == naive(clock.now() + timedelta(minutes=60))
        assert attachment.deleted_at is None

    async def test_register_uses_configured_ttl(self, db_session, blob_gateway, clock):
        lifecycle = AttachmentLifecycle(db_session, blob_gateway, clock, temp_ttl=timedelta(minutes=5))
        attachment = await lifecycle.register_temp(
            entity_type=EntityType.COMMENT,
            file_name="note.txt",
            file_url=f"{BUCKET_URL}/comment/note.txt",
            file_size=10,
            content_type="text/plain",
            uploaded_by=TEST_USER_ID,
        )
        assert naive(attachment.expires_at) == naive(clock.now() + timedelta(minutes=5))

    async def test_get_attachment_not_found(self, lifecycle):
        with pytest.raises(NotFoundError) as exc_info:
            await lifecycle.get_attachment(uuid.uuid4())
        assert exc_info.value.status_code == 404


class TestConfirmBatch:
    async def test_confirm_three_uploads_against_board(self, lifecycle, register):
        uploads = [await register(EntityType.BOARD) for _ in range(3)]
        board_id = uuid.uuid4()

        await lifecycle.confirm_batch([a.id for a in uploads], EntityType.BOARD, board_id)

        bound = await lifecycle.list_for_entity(EntityType.BOARD, board_id)
        assert {a.id for a in bound} == {a.id for a in uploads}
        for attachment in bound:
            assert attachment.status == AttachmentStatus.CONFIRMED.value
            assert attachment.entity_id == board_id
            assert attachment.expires_at is None

    async def test_confirm_batch_rejects_partially_confirmed_batch(self, lifecycle, register):
        """A batch containing an already-confirmed id fails whole and leaves the earlier owner intact."""
        first_id = (await register()).id
        second_id = (await register()).id
        first_board = uuid.uuid4()
        await lifecycle.confirm_batch([first_id], EntityType.BOARD, first_board)

        with pytest.raises(ValidationError):
            await lifecycle.confirm_batch([first_id, second_id], EntityType.BOARD, uuid.uuid4())

        reloaded = {a.id: a for a in await lifecycle.get_attachments([first_id, second_id])}
        assert reloaded[first_id].entity_id == first_board
        assert reloaded[first_id].status == AttachmentStatus.CONFIRMED.value
        assert reloaded[second_id].status == AttachmentStatus.TEMP.value
        assert reloaded[second_id].entity_id is None
        assert reloaded[second_id].expires_at is not None

    async def test_confirm_batch_rejects_wrong_entity_type(self, lifecycle, register):
        ids = [(await register(EntityType.BOARD)).id, (await register(EntityType.USER_PROFILE)).id]

        with pytest.raises(ValidationError):
            await lifecycle.confirm_batch(ids, EntityType.BOARD, uuid.uuid4())

        reloaded = await lifecycle.get_attachments(ids)
        assert len(reloaded) == 2
        assert all(a.status == AttachmentStatus.TEMP.value for a in reloaded)

    async def test_board_upload_cannot_bind_to_project(self, lifecycle, register):
        upload_id = (await register(EntityType.BOARD)).id

        with pytest.raises(ValidationError):
            await lifecycle.confirm_batch([upload_id], EntityType.PROJECT, uuid.uuid4())

        attachment = await lifecycle.get_attachment(upload_id)
        assert attachment.is_temp
        assert attachment.entity_id is None

    async def test_confirm_batch_rejects_unknown_id(self, lifecycle, register):
        upload_id = (await register()).id
        with pytest.raises(ValidationError):
            await lifecycle.confirm_batch([upload_id, uuid.uuid4()], EntityType.BOARD, uuid.uuid4())
        assert (await lifecycle.get_attachment(upload_id)).is_temp

    async def test_confirm_batch_collapses_duplicate_ids(self, lifecycle, register):
        upload = await register()
        board_id = uuid.uuid4()

        await lifecycle.confirm_batch([upload.id, upload.id], EntityType.BOARD, board_id)

        assert [a.id for a in await lifecycle.list_for_entity(EntityType.BOARD, board_id)] == [upload.id]

    async def test_confirm_empty_batch_is_noop(self, lifecycle):
        await lifecycle.confirm_batch([], EntityType.BOARD, uuid.uuid4())

    async def test_confirmed_attachment_cannot_move_to_another_owner(self, lifecycle, register):
        upload_id = (await register()).id
        owner = uuid.uuid4()
        await lifecycle.confirm_batch([upload_id], EntityType.BOARD, owner)

        with pytest.raises(ValidationError):
            await lifecycle.confirm_batch([upload_id], EntityType.BOARD, uuid.uuid4())

        assert (await lifecycle.get_attachment(upload_id)).entity_id == owner

    async def test_store_error_becomes_unavailable(self, lifecycle, register, monkeypatch):
        upload = await register()

        async def broken(*args, **kwargs):
            raise OperationalError("UPDATE attachments", {}, Exception("connection reset"))

        monkeypatch.setattr(lifecycle.store, "confirm_batch", broken)

        with pytest.raises(UnavailableError) as exc_info:
            await lifecycle.confirm_batch([upload.id], EntityType.BOARD, uuid.uuid4())
        assert exc_info.value.status_code == 503


class TestValidateForConfirm:
    async def test_valid_ids_pass(self, lifecycle, register):
        uploads = [await register(EntityType.PROJECT) for _ in range(2)]
        await lifecycle.validate_for_confirm([a.id for a in uploads], EntityType.PROJECT)

    async def test_missing_id_not_found(self, lifecycle, register):
        upload = await register()
        missing = uuid.uuid4()
        with pytest.raises(NotFoundError) as exc_info:
            await lifecycle.validate_for_confirm([upload.id, missing], EntityType.BOARD)
        assert str(missing) in exc_info.value.message

    async def test_type_mismatch(self, lifecycle, register):
        upload = await register(EntityType.COMMENT)
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.validate_for_confirm([upload.id], EntityType.PROJECT)
        assert "COMMENT" in exc_info.value.message

    async def test_already_confirmed(self, lifecycle, register):
        upload = await register()
        await lifecycle.confirm_batch([upload.id], EntityType.BOARD, uuid.uuid4())
        with pytest.raises(ValidationError):
            await lifecycle.validate_for_confirm([upload.id], EntityType.BOARD)

    async def test_lookup_timeout_becomes_unavailable(self, db_session, blob_gateway, clock, monkeypatch):
        lifecycle = AttachmentLifecycle(db_session, blob_gateway, clock, timeout=0.01)

        async def stalled(*args, **kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr(lifecycle.store, "find_by_ids", stalled)

        with pytest.raises(UnavailableError):
            await lifecycle.validate_for_confirm([uuid.uuid4()], EntityType.BOARD)


class TestReleaseBatch:
    async def test_release_deletes_blobs_and_rows(self, lifecycle, register, blob_gateway):
        uploads = [await register() for _ in range(2)]

        await lifecycle.release_batch(uploads)

        assert blob_gateway.deleted == [
            "board/2026/03/file-1.jpg",
            "board/2026/03/file-2.jpg",
        ]
        assert await lifecycle.get_attachments([a.id for a in uploads]) == []

    async def test_release_is_idempotent(self, lifecycle, register):
        upload = await register()
        await lifecycle.release_batch([upload])
        await lifecycle.release_batch([upload])
        assert await lifecycle.get_attachments([upload.id]) == []

    async def test_blob_failure_still_removes_row(self, db_session, clock, register):
        failing = RecordingBlobGateway(fail_keys={"board/2026/03/file-1.jpg"})
        upload = await register()
        lifecycle = AttachmentLifecycle(db_session, failing, clock)

        await lifecycle.release_batch([upload])

        assert failing.deleted == []
        assert await lifecycle.get_attachments([upload.id]) == []

    async def test_blob_timeout_still_removes_row(self, db_session, clock, register):
        upload = await register()
        lifecycle = AttachmentLifecycle(db_session, SlowBlobGateway(), clock, timeout=0.01)

        await lifecycle.release_batch([upload])

        assert await lifecycle.get_attachments([upload.id]) == []

    async def test_unparseable_url_skips_blob_delete(self, lifecycle, register, blob_gateway):
        upload = await register(file_url="legacy-upload-without-scheme.jpg")

        await lifecycle.release_batch([upload])

        assert blob_gateway.deleted == []
        assert await lifecycle.get_attachments([upload.id]) == []

    async def test_release_empty_is_noop(self, lifecycle, blob_gateway):
        await lifecycle.release_batch([])
        assert blob_gateway.deleted == []


class TestDiscard:
    async def test_discard_deletes_blob_and_soft_deletes_row(self, lifecycle, register, blob_gateway):
        upload = await register(EntityType.USER_PROFILE)

        await lifecycle.discard(upload.id)

        assert blob_gateway.deleted == ["user_profile/2026/03/file-1.jpg"]
        with pytest.raises(NotFoundError):
            await lifecycle.get_attachment(upload.id)

    async def test_discarded_attachment_cannot_be_confirmed(self, lifecycle, register):
        upload = await register()
        await lifecycle.discard(upload.id)

        with pytest.raises(ValidationError):
            await lifecycle.confirm_batch([upload.id], EntityType.BOARD, uuid.uuid4())

    async def test_discard_by_uploader(self, lifecycle, register, blob_gateway):
        upload = await register()

        await lifecycle.discard(upload.id, requested_by=TEST_USER_ID)

        assert blob_gateway.deleted == ["board/2026/03/file-1.jpg"]

    async def test_discard_by_someone_else_is_refused(self, lifecycle, register, blob_gateway):
        upload = await register()

        with pytest.raises(AuthorizationError) as exc_info:
            await lifecycle.discard(upload.id, requested_by=uuid.uuid4())

        assert exc_info.value.status_code == 403
        assert blob_gateway.deleted == []
        assert (await lifecycle.get_attachment(upload.id)).is_temp

    async def test_discard_unknown_id(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.discard(uuid.uuid4())


def test_unique_ids_keeps_first_seen_order():
    a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    assert unique_ids([b, a, b, c, a]) == [b, a, c]


async def test_status_invariant_holds_for_every_row(db_session, lifecycle, register):
    """CONFIRMED rows carry an owner and no expiry; TEMP rows carry an expiry and no owner."""
    uploads = [(await register(entity_type)).id for entity_type in EntityType]
    await lifecycle.confirm_batch(uploads[:1], EntityType.BOARD, uuid.uuid4())
    await lifecycle.confirm_batch(uploads[1:2], EntityType.PROJECT, uuid.uuid4())
    with pytest.raises(ValidationError):
        await lifecycle.confirm_batch(uploads[2:], EntityType.COMMENT, uuid.uuid4())

    rows = (await db_session.execute(select(Attachment))).scalars().all()

    assert len(rows) == len(uploads)
    for row in rows:
        if row.status == AttachmentStatus.CONFIRMED.value:
            assert row.entity_id is not None and row.expires_at is None
        else:
            assert row.status == AttachmentStatus.TEMP.value
            assert row.entity_id is None and row.expires_at is not None
