import uuid

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.attachments.service import AttachmentLifecycle
from src.core.database.session import get_db
from src.core.storage import BlobGateway, get_blob_gateway


def get_attachment_lifecycle(
    db: AsyncSession = Depends(get_db),
    blob_gateway: BlobGateway = Depends(get_blob_gateway),
) -> AttachmentLifecycle:
    return AttachmentLifecycle(db, blob_gateway)


def get_uploader_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID:
    """Caller id forwarded by the gateway after authentication."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user ID format")
