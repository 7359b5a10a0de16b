"""
Durable media storage for finished scene renders.

Provider result URLs are transient, so every render is downloaded and
re-uploaded to storage we own before a scene can be marked completed.

Backends (MEDIA_BACKEND):
  supabase — public `videos` bucket in Supabase Storage (default)
  r2       — Cloudflare R2 via the S3 API
"""

import os
import asyncio
import logging
from typing import Optional

import httpx

from .repository import get_service_client

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MEDIA_BACKEND = os.getenv("MEDIA_BACKEND", "supabase")
VIDEO_BUCKET = os.getenv("VIDEO_BUCKET", "videos")
DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "120"))

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")


def scene_video_key(scene_id: str, stamp_ms: int) -> str:
    return f"{scene_id}_{stamp_ms}.mp4"


async def download_bytes(url: str) -> bytes:
    """Download a file from a public URL and return raw bytes."""
    async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


class MediaStore:
    """Accepts bytes + content type, returns a stable public location."""

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError


class SupabaseMediaStore(MediaStore):

    def __init__(self, bucket: str = VIDEO_BUCKET, client=None):
        self.bucket = bucket
        self._client = client

    def _put(self, key: str, data: bytes, content_type: str) -> str:
        sb = self._client or get_service_client()
        storage = sb.storage.from_(self.bucket)
        storage.upload(key, data, {"content-type": content_type, "upsert": "true"})
        return storage.get_public_url(key)

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        public_url = await asyncio.to_thread(self._put, key, data, content_type)
        logger.info(f"Uploaded to Supabase Storage: {public_url}")
        return public_url


class R2MediaStore(MediaStore):

    def __init__(self, bucket: str = R2_BUCKET_NAME, public_url: str = R2_PUBLIC_URL, s3_client=None):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._s3 = s3_client

    def _client(self):
        if self._s3 is None:
            import boto3
            from botocore.config import Config as BotoConfig

            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    def _put(self, key: str, data: bytes, content_type: str) -> str:
        self._client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return f"{self.public_url}/{key}"

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        try:
            public_url = await asyncio.to_thread(self._put, key, data, content_type)
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url


def build_media_store(backend: Optional[str] = None) -> MediaStore:
    backend = (backend or MEDIA_BACKEND).lower()
    if backend == "r2":
        return R2MediaStore()
    if backend == "supabase":
        return SupabaseMediaStore()
    raise ValueError(f"Unknown MEDIA_BACKEND: {backend}")
