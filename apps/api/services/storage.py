"""S3-compatible object storage helpers for uploaded file bytes."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from functools import lru_cache
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import settings


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the object store rejects or fails an operation."""


@lru_cache
def _get_s3_client():
    kwargs = {
        "region_name": settings.AWS_REGION,
    }
    if settings.AWS_ACCESS_KEY_ID:
        kwargs["aws_access_key_id"] = settings.AWS_ACCESS_KEY_ID
        kwargs["aws_secret_access_key"] = settings.AWS_SECRET_ACCESS_KEY
    if settings.S3_ENDPOINT_URL:
        kwargs["endpoint_url"] = settings.S3_ENDPOINT_URL
    return boto3.client("s3", **kwargs)


def sanitize_filename(filename: Optional[str]) -> str:
    base = os.path.basename(filename or "upload")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "upload"


def build_object_key(user_id: str, filename: Optional[str]) -> str:
    """Create a unique object key, grouped per user under the upload folder."""
    folder = settings.STORAGE_UPLOAD_FOLDER.strip("/")
    name = f"{uuid.uuid4().hex}_{sanitize_filename(filename)}"
    parts = [p for p in (folder, user_id, name) if p]
    return "/".join(parts)


def public_url(key: str) -> str:
    if settings.STORAGE_PUBLIC_BASE_URL:
        return f"{settings.STORAGE_PUBLIC_BASE_URL.rstrip('/')}/{key}"
    if settings.S3_ENDPOINT_URL:
        return f"{settings.S3_ENDPOINT_URL.rstrip('/')}/{settings.S3_BUCKET_NAME}/{key}"
    return f"https://{settings.S3_BUCKET_NAME}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"


async def upload_object(key: str, content: bytes, content_type: str) -> str:
    """Store ``content`` under ``key`` and return its retrieval URL."""
    client = _get_s3_client()
    try:
        await asyncio.to_thread(
            client.put_object,
            Bucket=settings.S3_BUCKET_NAME,
            Key=key,
            Body=content,
            ContentType=content_type or "application/octet-stream",
        )
    except (BotoCoreError, ClientError) as exc:
        raise StorageError(f"Upload of {key} failed: {exc}") from exc
    return public_url(key)


async def delete_object(key: str) -> None:
    client = _get_s3_client()
    try:
        await asyncio.to_thread(client.delete_object, Bucket=settings.S3_BUCKET_NAME, Key=key)
    except (BotoCoreError, ClientError) as exc:
        raise StorageError(f"Delete of {key} failed: {exc}") from exc


async def download_url(key: str, stored_path: str, original_name: Optional[str] = None) -> str:
    """Return the URL a client should be redirected to for ``key``."""
    if not settings.STORAGE_PRESIGN_DOWNLOADS:
        return stored_path

    params = {"Bucket": settings.S3_BUCKET_NAME, "Key": key}
    if original_name:
        params["ResponseContentDisposition"] = f'attachment; filename="{sanitize_filename(original_name)}"'

    client = _get_s3_client()
    try:
        return await asyncio.to_thread(
            client.generate_presigned_url,
            "get_object",
            Params=params,
            ExpiresIn=max(int(settings.STORAGE_PRESIGN_TTL_SECONDS), 1),
        )
    except (BotoCoreError, ClientError) as exc:
        logger.warning("Could not presign %s, falling back to stored path: %s", key, exc)
        return stored_path
