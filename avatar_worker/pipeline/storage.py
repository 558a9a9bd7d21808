"""
R2 blob store for scene artifacts.

All scene outputs are stored under:
  projects/{project_id}/scenes/{scene_id}/{step}-{timestamp_ms}.{ext}

Keys are timestamp-suffixed and never overwritten. Vendors fetch inputs by
URL, so private objects are handed out as time-limited signed URLs.
"""

import asyncio
import logging
import os
import time
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig

from .errors import ProviderError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "avatar-scenes")

DEFAULT_SIGNED_URL_TTL = 3600

_EXTENSIONS = {
    "audio": "mp3",
    "image": "png",
    "video": "mp4",
    "lipsync": "mp4",
    "final": "mp4",
}


# ── Helpers ──────────────────────────────────────────────────────────────────

def scene_key(project_id: str, scene_id: str, step_name: str, ext: Optional[str] = None) -> str:
    """Generate the blob key for one scene output."""
    timestamp = int(time.time() * 1000)
    ext = ext or _EXTENSIONS.get(step_name, "bin")
    return f"projects/{project_id}/scenes/{scene_id}/{step_name}-{timestamp}.{ext}"


async def download_bytes(url: str, timeout: float = 300) -> bytes:
    """Download an artifact from a (vendor or signed) URL and return raw bytes."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as e:
        raise ProviderError("Download", f"Failed to download {url[:120]}: {e}") from e


class R2BlobStore:
    """S3-compatible client for Cloudflare R2."""

    def __init__(
        self,
        bucket: str = R2_BUCKET_NAME,
        public_url: str = R2_PUBLIC_URL,
        s3_client=None,
    ):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._s3 = s3_client

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        """Upload bytes and return a URL for the stored object."""
        try:
            await asyncio.to_thread(
                self.s3.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise

        logger.info(f"Uploaded {len(data)} bytes to R2: {key}")
        return self.object_url(key)

    def object_url(self, key: str) -> str:
        """Public URL for a stored object; a signed one when the bucket has no public domain."""
        return f"{self.public_url}/{key}" if self.public_url else self.signed_read_url(key)

    async def fetch(self, url: str) -> bytes:
        """Pull a vendor output into memory before re-uploading it."""
        return await download_bytes(url)

    def signed_read_url(self, key: str, ttl_seconds: int = DEFAULT_SIGNED_URL_TTL) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )

    def key_from_url(self, url: str) -> Optional[str]:
        """Recover the object key from a public URL written by upload()."""
        if self.public_url and url.startswith(self.public_url + "/"):
            return url[len(self.public_url) + 1:].split("?", 1)[0]
        marker = f"/{self.bucket}/"
        if marker in url:
            return url.split(marker, 1)[1].split("?", 1)[0]
        return None
