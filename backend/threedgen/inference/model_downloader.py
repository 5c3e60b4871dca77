import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
import requests
from ..config import settings
from ..exceptions import UploadError
from .. import storage
from ..logger import logger

MODEL_CONTENT_TYPE = "model/gltf-binary"
CHUNK_SIZE = 64 * 1024

session = requests.Session()


class ModelTooLargeError(Exception):
    def __init__(self, size_bytes: int, limit_bytes: int):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(f"Model is larger than {limit_bytes} bytes (got at least {size_bytes})")


@dataclass
class RehostResult:
    model_url: str
    original_model_url: str
    attempted_upload: bool
    uploaded: bool
    fallback_reason: Optional[str] = None
    size_bytes: Optional[int] = None

    @property
    def fallback_used(self) -> bool:
        return not self.uploaded

    def metadata(self, prediction_time: Optional[float] = None) -> Dict[str, Any]:
        return {
            "is_uploaded_to_storage": self.uploaded,
            "prediction_processing_time": prediction_time,
            "upload_info": {
                "attempted_upload": self.attempted_upload,
                "upload_successful": self.uploaded,
                "fallback_used": self.fallback_used,
                "fallback_reason": self.fallback_reason,
                "storage_url": self.model_url if self.uploaded else None,
                "external_url": self.original_model_url,
            },
        }


def download_model(url: str, max_bytes: Optional[int] = None, timeout: Optional[float] = None) -> bytes:
    """
    Stream the artifact into memory, aborting as soon as it exceeds max_bytes
    or the whole transfer takes longer than timeout seconds.
    """
    max_bytes = max_bytes or settings.MODEL_REHOST_MAX_BYTES
    timeout = timeout or settings.MODEL_DOWNLOAD_TIMEOUT_SECONDS
    deadline = time.monotonic() + timeout

    with session.get(url, stream=True, timeout=timeout) as resp:
        resp.raise_for_status()

        declared = resp.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise ModelTooLargeError(int(declared), max_bytes)

        buf = bytearray()
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if time.monotonic() > deadline:
                raise requests.Timeout(f"Model download exceeded {timeout}s")
            buf.extend(chunk)
            if len(buf) > max_bytes:
                raise ModelTooLargeError(len(buf), max_bytes)
        return bytes(buf)


async def rehost_model(original_url: str, prediction_id: str) -> RehostResult:
    """
    Copy the upstream artifact into our bucket. Every failure on this path
    degrades to the upstream URL instead of failing the job.
    """
    try:
        logger.info(f"Downloading 3D model for prediction {prediction_id}", extra={"prediction_id": prediction_id})
        data = await asyncio.to_thread(download_model, original_url)
    except ModelTooLargeError as e:
        logger.warning(
            f"Model too large for prediction {prediction_id}, using original URL",
            extra={"prediction_id": prediction_id, "size_bytes": e.size_bytes},
        )
        return RehostResult(
            model_url=original_url,
            original_model_url=original_url,
            attempted_upload=False,
            uploaded=False,
            fallback_reason="too_large",
            size_bytes=e.size_bytes,
        )
    except Exception as e:
        logger.warning(
            f"Download error for prediction {prediction_id}, using original URL: {e}",
            extra={"prediction_id": prediction_id},
        )
        return RehostResult(
            model_url=original_url,
            original_model_url=original_url,
            attempted_upload=False,
            uploaded=False,
            fallback_reason="download_failed",
        )

    try:
        url = await storage.upload_with_retry(
            data,
            f"3d_model_{prediction_id}.glb",
            MODEL_CONTENT_TYPE,
            prefix="models",
        )
    except UploadError as e:
        logger.warning(
            f"Upload failed for prediction {prediction_id}, using original URL: {e.message}",
            extra={"prediction_id": prediction_id},
        )
        return RehostResult(
            model_url=original_url,
            original_model_url=original_url,
            attempted_upload=True,
            uploaded=False,
            fallback_reason="upload_failed",
            size_bytes=len(data),
        )

    logger.info(f"3D model rehosted for prediction {prediction_id}", extra={"prediction_id": prediction_id})
    return RehostResult(
        model_url=url,
        original_model_url=original_url,
        attempted_upload=True,
        uploaded=True,
        size_bytes=len(data),
    )
