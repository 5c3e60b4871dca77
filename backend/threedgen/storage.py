"""
Artifact store adapter over an S3-compatible bucket.
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Iterable, Optional

import boto3

from .config import settings
from .exceptions import S3StorageError, UploadError
from .logger import logger

s3 = boto3.client(
    "s3",
    aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
    aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
    region_name=settings.AWS_REGION_NAME,
    endpoint_url=settings.AWS_ENDPOINT_URL,
)

STAGING_PREFIX = "staging"


def object_key(prefix: str, filename: str) -> str:
    # A fresh component per write so a retried upload never reuses a partial object.
    return f"{prefix.strip('/')}/{uuid.uuid4().hex}_{filename}"


def public_url(key: str) -> str:
    if settings.S3_PUBLIC_BASE_URL:
        return f"{settings.S3_PUBLIC_BASE_URL.rstrip('/')}/{key}"
    return f"{settings.AWS_ENDPOINT_URL.rstrip('/')}/{settings.S3_BUCKET_NAME}/{key}"


def _put(key: str, data: bytes, content_type: str) -> None:
    try:
        s3.put_object(
            Bucket=settings.S3_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
    except Exception as e:
        logger.error(f"Failed to write object to S3: {key}, error: {e}")
        raise S3StorageError(f"Failed to upload {key}: {e}")


def put_object(data: bytes, filename: str, content_type: str, prefix: str = "uploads") -> str:
    """Write one object and return the URL it is served from."""
    key = object_key(prefix, filename)
    _put(key, data, content_type)
    url = public_url(key)
    logger.info(
        f"Uploaded object to S3: {key}",
        extra={"key": key, "size_bytes": len(data), "content_type": content_type},
    )
    return url


async def upload_with_retry(
    data: bytes,
    filename: str,
    content_type: str,
    *,
    prefix: str = "uploads",
    attempts: Optional[int] = None,
    delay_seconds: Optional[float] = None,
) -> str:
    """
    Upload with a fixed delay between attempts.

    Raises UploadError once every attempt has failed. Callers decide whether
    that is fatal (input images) or degrades to a fallback URL (models).
    """
    attempts = attempts or settings.UPLOAD_RETRY_ATTEMPTS
    delay = settings.UPLOAD_RETRY_DELAY_SECONDS if delay_seconds is None else delay_seconds

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.to_thread(put_object, data, filename, content_type, prefix)
        except Exception as e:
            last_error = e
            logger.warning(
                f"Upload attempt {attempt}/{attempts} failed for {filename}: {e}",
                extra={"upload_filename": filename, "attempt": attempt},
            )
            if attempt < attempts:
                await asyncio.sleep(delay)

    raise UploadError(f"Failed to upload {filename} after {attempts} attempts: {last_error}")


def stage_raw_image(job_id: str, index: int, data: bytes, filename: str, content_type: str) -> str:
    """Hold a raw submission until the worker picks the job up. Returns the key."""
    key = f"{STAGING_PREFIX}/{job_id}/{index}_{filename}"
    _put(key, data, content_type)
    return key


def read_staged_image(key: str) -> bytes:
    try:
        obj = s3.get_object(Bucket=settings.S3_BUCKET_NAME, Key=key)
        return obj["Body"].read()
    except Exception as e:
        logger.error(f"Failed to read staged image from S3: {key}, error: {e}")
        raise S3StorageError(f"Failed to read staged image {key}: {e}")


def delete_staged_images(keys: Iterable[str]) -> None:
    for key in keys:
        try:
            s3.delete_object(Bucket=settings.S3_BUCKET_NAME, Key=key)
        except Exception as e:
            logger.warning(f"Failed to delete staged image {key}: {e}")
