"""
S3 helpers for pothole image storage (Hetzner/S3-compatible).
"""
from __future__ import annotations

import logging
import time
from functools import lru_cache
from pathlib import PurePosixPath

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from common.config import s3 as settings
from orchestrator.exceptions import BlobUploadError

logger = logging.getLogger(__name__)


def s3_enabled() -> bool:
    return bool(
        settings.S3_ENDPOINT
        and settings.S3_BUCKET
        and settings.S3_ACCESS_KEY
        and settings.S3_SECRET_KEY
    )


def _normalize_key(raw_key: str) -> tuple[str, str]:
    key = raw_key.strip().lstrip("/")
    if not key:
        raise ValueError("S3 key is required")

    parts = PurePosixPath(key).parts
    if ".." in parts:
        raise ValueError("S3 key must not contain '..'")

    if settings.S3_PREFIX:
        if key == settings.S3_PREFIX:
            raise ValueError("S3 key resolves to prefix root")
        if key.startswith(f"{settings.S3_PREFIX}/"):
            full_key = key
            relative_key = key[len(settings.S3_PREFIX) + 1 :]
        else:
            full_key = f"{settings.S3_PREFIX}/{key}"
            relative_key = key
    else:
        full_key = key
        relative_key = key

    return full_key, relative_key


@lru_cache(maxsize=1)
def _client():
    if not s3_enabled():
        raise RuntimeError("S3 is not configured")
    return boto3.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT,
        region_name=settings.S3_REGION,
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        config=Config(signature_version="s3v4"),
    )


def public_url(raw_key: str) -> str | None:
    if not settings.S3_PUBLIC_BASE_URL:
        return None
    full_key, relative_key = _normalize_key(raw_key)
    base = settings.S3_PUBLIC_BASE_URL.rstrip("/")
    if settings.S3_PREFIX and base.endswith(f"/{settings.S3_PREFIX}"):
        suffix = relative_key
    else:
        suffix = full_key
    return f"{base}/{suffix}"


def generate_filename(latitude: float, longitude: float, confidence: float, now: float | None = None) -> str:
    """Unique image name embedding rounded coordinates, confidence % and a ms timestamp."""
    timestamp_ms = int((time.time() if now is None else now) * 1000)
    return f"pothole_{latitude:.6f}_{longitude:.6f}_{round(confidence * 100)}_{timestamp_ms}.jpg"


class S3BlobStore:
    """Uploads detection images and hands back a durable retrieval URL."""

    def __init__(
        self,
        client=None,
        bucket: str = settings.S3_BUCKET,
        folder: str = settings.POTHOLE_IMAGES_FOLDER,
        presign_expires: int = settings.S3_PRESIGN_EXPIRES,
    ):
        self._client = client
        self.bucket = bucket
        self.folder = folder.strip("/")
        self.presign_expires = presign_expires

    @property
    def client(self):
        if self._client is None:
            self._client = _client()
        return self._client

    def object_key(self, filename: str) -> str:
        return f"{self.folder}/{filename}" if self.folder else filename

    def generate_filename(self, latitude: float, longitude: float, confidence: float) -> str:
        return generate_filename(latitude, longitude, confidence)

    def upload(self, image_bytes: bytes, filename: str) -> str:
        full_key, relative_key = _normalize_key(self.object_key(filename))
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=full_key,
                Body=image_bytes,
                ContentType="image/jpeg",
                CacheControl=settings.POTHOLE_IMAGE_CACHE_CONTROL,
            )
            url = self.url_for(relative_key)
        except (BotoCoreError, ClientError, RuntimeError) as exc:
            raise BlobUploadError(f"Failed to upload {full_key}: {exc}") from exc

        logger.info("[s3] Uploaded %s (%d bytes)", full_key, len(image_bytes))
        return url

    def url_for(self, raw_key: str) -> str:
        public = public_url(raw_key)
        if public:
            return public
        full_key, _ = _normalize_key(raw_key)
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": full_key},
            ExpiresIn=self.presign_expires,
        )

    def delete(self, raw_key: str) -> bool:
        full_key, _ = _normalize_key(raw_key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=full_key)
        except (BotoCoreError, ClientError, RuntimeError) as exc:
            logger.warning("[s3] Failed to delete %s: %s", full_key, exc)
            return False
        return True

    def check_access(self) -> bool:
        """Liveness probe. Never raises."""
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError, RuntimeError) as exc:
            logger.warning("[s3] Bucket '%s' not accessible: %s", self.bucket, exc)
            return False
        return True
