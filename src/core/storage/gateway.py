"""Blob storage gateways: S3-compatible bucket (prod) or local folder (dev)."""

from pathlib import Path
from typing import Protocol

from src.core.config import settings
from src.core.storage.keys import quote_key


class BlobGateway(Protocol):
    """Object storage operations the attachment lifecycle depends on."""

    async def delete(self, key: str) -> None: ...

    def public_url(self, key: str) -> str: ...


class S3BlobGateway:
    """S3 / MinIO / R2 bucket accessed through aioboto3."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None,
        access_key: str | None,
        secret_key: str | None,
        region: str = "auto",
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region

    @classmethod
    def from_settings(cls) -> "S3BlobGateway":
        return cls(
            bucket=settings.s3_bucket or "",
            endpoint_url=settings.s3_endpoint_url,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
        )

    def _client(self):
        import aioboto3

        session = aioboto3.Session()
        return session.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            region_name=self.region,
        )

    async def delete(self, key: str) -> None:
        """Delete object from bucket. Deleting a missing key is not an error for S3."""
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=key)

    def public_url(self, key: str) -> str:
        endpoint = (self.endpoint_url or "").rstrip("/")
        if not endpoint or "amazonaws.com" in endpoint:
            # Virtual-hosted style so the key is everything after the host.
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote_key(key)}"
        return f"{endpoint}/{self.bucket}/{quote_key(key)}"


class LocalBlobGateway:
    """Files under a local directory, served from ``public_base_url``.

    ``public_base_url`` must be ``scheme://host/<segment>`` so that stored URLs
    keep the ``scheme://host/bucket/key`` layout.
    """

    def __init__(self, root: str | Path, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls) -> "LocalBlobGateway":
        return cls(settings.storage_path, settings.storage_public_base_url)

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise ValueError(f"Storage key escapes storage root: {key}")
        return path

    async def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{quote_key(key)}"


_gateway: BlobGateway | None = None


def get_blob_gateway() -> BlobGateway:
    """Dependency returning the configured gateway (S3 when configured, else local folder)."""
    global _gateway
    if _gateway is None:
        _gateway = S3BlobGateway.from_settings() if settings.use_s3 else LocalBlobGateway.from_settings()
    return _gateway
