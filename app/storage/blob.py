# app/storage/blob.py
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from app.core.config import Settings
from app.core.errors import BlobNotFound

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class BlobStore(ABC):
    """
    Key-addressed store for raw file bytes.
    Metadata lives in the database; this only ever sees opaque keys.
    """

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Stores ``data`` under ``key``.

        :return: The key the object was stored under.
        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """
        Returns the bytes stored under ``key``.
        Raises BlobNotFound if there is no such object.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """
        Deletes the object stored under ``key``.
        Raises on failure; callers decide whether that matters.
        """


def build_file_key(prefix: str, owner_id: int, folder_path: Optional[str], file_name: str) -> str:
    """Unique key grouped per owner and folder, e.g.
    ``document-storage/7/Manuals/2024/1718000000000-spec.pdf``.
    """
    sanitized = _UNSAFE_KEY_CHARS.sub("_", file_name)
    parts = [prefix, str(owner_id)]
    if folder_path:
        parts.append(folder_path.strip("/"))
    parts.append(f"{int(time.time() * 1000)}-{sanitized}")
    return "/".join(parts)


class S3BlobStore(BlobStore):
    def __init__(self, client, bucket_name: str):
        self.s3 = client
        self.bucket_name = bucket_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        # Timeouts bound every call so a slow delete counts as a failed one
        config = Config(
            connect_timeout=settings.blob_timeout_seconds,
            read_timeout=settings.blob_timeout_seconds,
            retries={"max_attempts": settings.blob_max_attempts, "mode": "standard"},
            max_pool_connections=max(10, settings.blob_delete_concurrency),
        )
        client = boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
            endpoint_url=settings.aws_s3_endpoint_url,
            config=config,
        )
        return cls(client, settings.aws_s3_bucket_name)

    def put(self, key: str, data: bytes, content_type: str) -> str:
        self.s3.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )
        logger.info(f"Uploaded blob {key} ({len(data)} bytes)")
        return key

    def get(self, key: str) -> bytes:
        try:
            obj = self.s3.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise BlobNotFound(key) from e
            raise
        return obj["Body"].read()

    def delete(self, key: str) -> None:
        self.s3.delete_object(Bucket=self.bucket_name, Key=key)
        logger.info(f"Deleted blob {key}")
