from src.core.storage.gateway import BlobGateway, LocalBlobGateway, S3BlobGateway, get_blob_gateway
from src.core.storage.keys import extract_storage_key, quote_key

__all__ = [
    "BlobGateway",
    "LocalBlobGateway",
    "S3BlobGateway",
    "get_blob_gateway",
    "extract_storage_key",
    "quote_key",
]
