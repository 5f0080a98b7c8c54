"""
Proof-of-payment and delivery images on S3-compatible object storage (MinIO
in development).

Objects are written under ``{tenant_id}/{category}/{yyyy}/{mm}/{uuid}_{name}``
and handed back as public URLs; callers decide whether a failed upload is
fatal.
"""

import os
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from lpg_backend.config import settings
from lpg_backend.exceptions import InvalidRequestError, StorageError
from lpg_backend.logging_config import get_logger
from lpg_backend.models import utcnow

logger = get_logger("storage")

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}


@dataclass
class StorageConfig:
    endpoint: str
    access_key: str
    secret_key: str
    bucket: str
    region: str = "us-east-1"
    use_ssl: bool = False
    public_url: Optional[str] = None
    max_upload_bytes: int = 10 * 1024 * 1024

    @classmethod
    def from_settings(cls) -> "StorageConfig":
        return cls(
            endpoint=settings.storage_endpoint,
            access_key=settings.storage_access_key,
            secret_key=settings.storage_secret_key,
            bucket=settings.storage_bucket,
            region=settings.storage_region,
            use_ssl=settings.storage_use_ssl,
            public_url=settings.storage_public_url,
            max_upload_bytes=settings.max_upload_bytes,
        )

    @property
    def endpoint_url(self) -> str:
        protocol = "https" if self.use_ssl else "http"
        return f"{protocol}://{self.endpoint}"


def object_key(tenant_id: int, category: str, filename: str) -> str:
    now = utcnow()
    safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in filename or "proof")
    name, ext = os.path.splitext(safe)
    return f"{tenant_id}/{category}/{now.year}/{now.month:02d}/{uuid.uuid4().hex[:8]}_{name[:50]}{ext}"


class ProofStorage:
    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig.from_settings()
        self._client = None

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint_url,
                aws_access_key_id=self.config.access_key,
                aws_secret_access_key=self.config.secret_key,
                region_name=self.config.region,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
        return self._client

    def validate(self, content_type: Optional[str], size: int) -> None:
        if content_type not in ALLOWED_IMAGE_TYPES:
            allowed = ", ".join(ALLOWED_IMAGE_TYPES)
            raise InvalidRequestError(f"Invalid file type. Allowed: {allowed}")
        if size == 0:
            raise InvalidRequestError("Uploaded file is empty")
        if size > self.config.max_upload_bytes:
            raise InvalidRequestError(
                f"File too large. Maximum size: {self.config.max_upload_bytes // (1024 * 1024)}MB"
            )

    def public_url(self, key: str) -> str:
        base = (self.config.public_url or self.config.endpoint_url).rstrip("/")
        return f"{base}/{self.config.bucket}/{key}"

    def upload(
        self,
        tenant_id: int,
        category: str,
        filename: str,
        content: bytes,
        content_type: Optional[str],
    ) -> str:
        """Store ``content`` and return its public URL."""
        self.validate(content_type, len(content))
        key = object_key(tenant_id, category, filename)
        try:
            self.client.put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error("proof_upload_failed", extra={"key": key, "error": str(exc)})
            raise StorageError(f"Upload failed: {exc}") from exc
        logger.info("proof_uploaded", extra={"key": key, "size": len(content)})
        return self.public_url(key)


@lru_cache
def get_storage() -> ProofStorage:
    return ProofStorage()
