"""S3-compatible storage for offloaded activity photos.

Photos are transcoded to AVIF and stored under
``<public_url_prefix>/activity-<id>-<uuid>.avif``, addressed publicly as
``<endpoint>/<bucket>/<key>``. boto3 and Pillow are blocking, so every call
is pushed to a worker thread with :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from DsasCCA.config.models import ObjectStoreConfig
from DsasCCA.storage.images import (
    AVIF_CONTENT_TYPE,
    AVIF_FORMAT,
    EmbeddedImage,
    decode_base64_image,
    transcode_to_avif,
)

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 100
ACTIVITY_OBJECT_PREFIX = "activity-"


class AssetStore(Protocol):
    """Operations the reconciliation engine needs from object storage."""

    prefix: str

    def public_url(self, key: str) -> str: ...

    async def list_keys(self, prefix: str) -> List[str]: ...

    async def delete(self, key: str) -> None: ...

    async def delete_many(self, keys: Sequence[str]) -> Tuple[int, int]: ...

    def activity_object_key(self, activity_id: str) -> str: ...

    async def upload_image(self, image: EmbeddedImage, key: str) -> Optional[str]: ...


def construct_public_url(endpoint: Optional[str], bucket: Optional[str], key: str) -> str:
    """Join endpoint, bucket and key into a public URL; empty when unconfigured."""
    if not endpoint or not bucket:
        return ""
    return f"{endpoint.rstrip('/')}/{bucket.strip('/')}/{key.lstrip('/')}"


class S3AssetStore:
    """S3 storage backend for activity photos.

    Args:
        config: Object storage settings (must be ``enabled``)
        client: Pre-built boto3 S3 client (tests inject a stubbed one)
    """

    def __init__(self, config: ObjectStoreConfig, client: Any = None) -> None:
        self.config = config
        self.bucket = config.bucket or ""
        self.prefix = config.public_url_prefix
        self.s3_client = client if client is not None else self._init_client()

    def _init_client(self) -> Any:
        """Initialize the boto3 client against the configured endpoint."""
        import boto3

        logger.info(f"Connecting to S3 bucket {self.bucket} at {self.config.endpoint}")
        secret = self.config.secret_access_key
        return boto3.client(
            "s3",
            endpoint_url=self.config.endpoint,
            region_name=self.config.region,
            aws_access_key_id=self.config.access_key_id,
            aws_secret_access_key=secret.get_secret_value() if secret else None,
        )

    def public_url(self, key: str) -> str:
        return construct_public_url(self.config.endpoint, self.bucket, key)

    def activity_object_key(self, activity_id: str) -> str:
        """Fresh key for a photo of ``activity_id``."""
        return f"{self.prefix}/{ACTIVITY_OBJECT_PREFIX}{activity_id}-{uuid.uuid4()}.{AVIF_FORMAT}"

    # ---- blocking primitives ----

    def _put_object(self, key: str, data: bytes, content_type: str) -> None:
        extra: dict[str, Any] = {"ContentType": content_type}
        if self.config.acl:
            extra["ACL"] = self.config.acl
        self.s3_client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def _list_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        paginator = self.s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                key = item.get("Key")
                if key and not key.endswith("/"):
                    keys.append(key)
        return keys

    def _delete_object(self, key: str) -> None:
        self.s3_client.delete_object(Bucket=self.bucket, Key=key)

    # ---- async API ----

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(self._put_object, key, data, content_type)
        return self.public_url(key)

    async def list_keys(self, prefix: str) -> List[str]:
        logger.debug(f"Listing objects with prefix {prefix!r}")
        keys = await asyncio.to_thread(self._list_keys, prefix)
        logger.info(f"Listed {len(keys)} objects with prefix {prefix!r}")
        return keys

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_object, key)

    async def delete_many(self, keys: Sequence[str]) -> Tuple[int, int]:
        """Delete ``keys`` in batches; returns ``(deleted, failed)``."""
        deleted = failed = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            results = await asyncio.gather(
                *(self.delete(key) for key in batch), return_exceptions=True
            )
            for key, result in zip(batch, results):
                if isinstance(result, BaseException):
                    failed += 1
                    logger.error(f"Failed to delete {key}: {result}")
                else:
                    deleted += 1
        logger.info(f"Deleted {deleted} objects. Failed: {failed}")
        return deleted, failed

    async def upload_image(self, image: EmbeddedImage, key: str) -> Optional[str]:
        """Transcode an embedded photo to AVIF and store it under ``key``.

        Returns:
            The public URL, or ``None`` when decoding, transcoding or the
            upload fails
        """
        try:
            data = decode_base64_image(image.base64_content)
            avif = await asyncio.to_thread(transcode_to_avif, data, self.config.avif_quality)
            url = await self.put(key, avif, AVIF_CONTENT_TYPE)
        except (ValueError, BotoCoreError, ClientError) as exc:
            logger.error(f"Image upload failed for {key}: {exc}")
            return None
        logger.info(f"Image uploaded: {url}")
        return url


def build_asset_store(config: ObjectStoreConfig) -> Optional[S3AssetStore]:
    """Return an :class:`S3AssetStore`, or ``None`` when storage is not configured."""
    if not config.enabled:
        logger.warning("Object storage configuration is incomplete; image offload disabled")
        return None
    return S3AssetStore(config)
