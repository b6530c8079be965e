"""API for registering, inspecting and discarding uploaded attachments."""

import uuid

from fastapi import APIRouter, Depends, Response, status

from src.core.attachments.dependencies import get_attachment_lifecycle, get_uploader_id
from src.core.attachments.schemas import AttachmentRegister, AttachmentResponse
from src.core.attachments.service import AttachmentLifecycle
from src.core.storage import BlobGateway, get_blob_gateway
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/attachments", tags=["Attachments"])


@router.post("", response_model=ApiResponse[AttachmentResponse], status_code=status.HTTP_201_CREATED)
async def register_attachment(
    data: AttachmentRegister,
    lifecycle: AttachmentLifecycle = Depends(get_attachment_lifecycle),
    blob_gateway: BlobGateway = Depends(get_blob_gateway),
    uploader_id: uuid.UUID = Depends(get_uploader_id),
):
    """Record an uploaded blob as a temporary attachment. Returns the id to reference in entity forms."""
    attachment = await lifecycle.register_temp(
        entity_type=data.entity_type,
        file_name=data.file_name,
        file_url=blob_gateway.public_url(data.file_key),
        file_size=data.file_size,
        content_type=data.content_type,
        uploaded_by=uploader_id,
    )
    return ApiResponse(
        success=True,
        message="Attachment registered",
        data=AttachmentResponse.model_validate(attachment),
    )


@router.get(
    "/{attachment_id}",
    response_model=ApiResponse[AttachmentResponse],
    dependencies=[Depends(get_uploader_id)],
)
async def get_attachment_info(
    attachment_id: uuid.UUID,
    lifecycle: AttachmentLifecycle = Depends(get_attachment_lifecycle),
):
    """Get attachment metadata. Any authenticated caller may read it."""
    attachment = await lifecycle.get_attachment(attachment_id)
    return ApiResponse(success=True, data=AttachmentResponse.model_validate(attachment))


@router.delete("/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_attachment(
    attachment_id: uuid.UUID,
    lifecycle: AttachmentLifecycle = Depends(get_attachment_lifecycle),
    uploader_id: uuid.UUID = Depends(get_uploader_id),
):
    """Delete the file and its record. Only the uploader may do this."""
    await lifecycle.discard(attachment_id, requested_by=uploader_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
