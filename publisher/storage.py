"""
Multipublish Temporary Storage
==============================
Cloudflare R2 (S3 API) holding the uploaded media until the platforms
have fetched it.

Exports:
  - TemporaryStorage: put(name, data) / delete(url) / owns(url) / list(cursor) / delete_all()
  - R2Storage: boto3-backed implementation
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

from .config import StorageConfig
from .errors import ErrorCode, PublishError

logger = logging.getLogger("multipublish.storage")

LIST_PAGE_SIZE = 1000
PRESIGNED_URL_EXPIRY = 3600


class TemporaryStorage(ABC):
    """Contract for the public scratch bucket the platforms pull media from."""

    @abstractmethod
    async def put(self, name: str, data: bytes, content_type: str = "video/mp4") -> str:
        """Store ``data`` and return a publicly fetchable URL."""

    @abstractmethod
    async def delete(self, url: str) -> None:
        """Delete the object behind ``url``. Deleting a missing object is not an error."""

    @abstractmethod
    def owns(self, url: str) -> bool:
        """True when ``url`` points at an object this storage issued and may delete."""

    @abstractmethod
    async def list(self, cursor: Optional[str] = None) -> Tuple[List[str], Optional[str]]:
        """Return one page of object URLs and the cursor of the next page (None when done)."""

    async def delete_all(self) -> int:
        """Bulk cleanup: delete every object, page by page."""
        deleted = 0
        cursor = None
        while True:
            urls, cursor = await self.list(cursor)
            for url in urls:
                await self.delete(url)
                deleted += 1
            if not cursor:
                break
        logger.info(f"Storage bulk cleanup deleted {deleted} objects")
        return deleted


class R2Storage(TemporaryStorage):
    """R2 bucket accessed through boto3. Blocking calls run in the default executor."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client

    def _get_client(self):
        """Get or create the boto3 S3 client for R2."""
        if self._client is not None:
            return self._client

        import boto3
        from botocore.config import Config

        self._client = boto3.client(
            "s3",
            endpoint_url=self.config.endpoint_url(),
            aws_access_key_id=self.config.access_key_id,
            aws_secret_access_key=self.config.secret_access_key,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
            region_name="auto",
        )
        return self._client

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    # ------------------------------------------------------------------
    # Key <-> URL mapping
    # ------------------------------------------------------------------

    def make_key(self, name: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        safe = name.replace("/", "_").strip() or "video.mp4"
        return f"{self.config.key_prefix}{stamp}_{secrets.token_hex(4)}_{safe}"

    def url_for_key(self, key: str) -> str:
        """Public URL if R2_PUBLIC_URL is configured, presigned GET otherwise."""
        if self.config.public_url:
            return f"{self.config.public_url.rstrip('/')}/{quote(key)}"
        return self._get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.bucket_name, "Key": key},
            ExpiresIn=PRESIGNED_URL_EXPIRY,
        )

    def key_for_url(self, url: str) -> str:
        """Object key behind a URL this bucket issued. Any other host raises STORAGE_FAILED."""
        base = self.config.public_url.rstrip("/")
        if base and url.startswith(base + "/"):
            key = unquote(url[len(base) + 1:].split("?", 1)[0])
        else:
            # Path-style presigned URL: <endpoint>/<bucket>/<key>
            parsed = urlparse(url)
            bucket_prefix = f"/{self.config.bucket_name}/"
            if parsed.netloc != urlparse(self.config.endpoint_url()).netloc or not parsed.path.startswith(bucket_prefix):
                raise PublishError(ErrorCode.STORAGE_FAILED, f"URL is not in this bucket: {url}")
            key = unquote(parsed.path[len(bucket_prefix):])
        if not key.startswith(self.config.key_prefix) or key == self.config.key_prefix:
            raise PublishError(ErrorCode.STORAGE_FAILED, f"URL is outside the temporary prefix: {url}")
        return key

    def owns(self, url: str) -> bool:
        try:
            self.key_for_url(url)
        except PublishError:
            return False
        return True

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def put(self, name: str, data: bytes, content_type: str = "video/mp4") -> str:
        key = self.make_key(name)
        logger.info(f"R2 put: {key} ({len(data)} bytes, {content_type})")
        try:
            await self._run(
                self._get_client().put_object,
                Bucket=self.config.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            raise PublishError(ErrorCode.STORAGE_FAILED, f"R2 put failed for {key}: {e}") from e
        return self.url_for_key(key)

    async def delete(self, url: str) -> None:
        key = self.key_for_url(url)
        logger.info(f"R2 delete: {key}")
        try:
            await self._run(self._get_client().delete_object, Bucket=self.config.bucket_name, Key=key)
        except Exception as e:
            raise PublishError(ErrorCode.STORAGE_FAILED, f"R2 delete failed for {key}: {e}") from e

    async def list(self, cursor: Optional[str] = None) -> Tuple[List[str], Optional[str]]:
        params = {
            "Bucket": self.config.bucket_name,
            "Prefix": self.config.key_prefix,
            "MaxKeys": LIST_PAGE_SIZE,
        }
        if cursor:
            params["ContinuationToken"] = cursor
        try:
            resp = await self._run(self._get_client().list_objects_v2, **params)
        except Exception as e:
            raise PublishError(ErrorCode.STORAGE_FAILED, f"R2 list failed: {e}") from e

        urls = [self.url_for_key(obj["Key"]) for obj in resp.get("Contents", [])]
        next_cursor = resp.get("NextContinuationToken") if resp.get("IsTruncated") else None
        return urls, next_cursor
