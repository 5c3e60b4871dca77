"""
Job orchestrator: the pending -> processing -> completed/failed state machine.

One run owns one job record. Every stage persists its result as soon as it
has one, so a client polling the status endpoint sees partial progress even
when a later stage fails.
"""
from __future__ import annotations

import asyncio
import json
import threading
import time
import traceback
from typing import Any, Dict, List, Optional, Sequence

from . import job_store, storage
from .db import AsyncSessionLocal
from .exceptions import PipelineInterrupted, ThreeDJobBaseException, UpstreamError
from .inference import model_downloader, prediction_client
from .logger import logger
from .models import Job
from .preprocess import PreprocessedImage, RawImage, preprocess_images


async def _persist(job_id: str, **fields: Any) -> Job:
    async with AsyncSessionLocal() as db:
        return await job_store.update_job(db, job_id, **fields)


async def _fail(job_id: str, error_message: Any) -> None:
    # Last line of defence: nothing raised here may escape the pipeline.
    error_message = str(error_message) if error_message else job_store.DEFAULT_FAILURE_MESSAGE
    for message in (error_message, job_store.DEFAULT_FAILURE_MESSAGE):
        try:
            async with AsyncSessionLocal() as db:
                await job_store.fail_job(db, job_id, message)
            logger.info(f"Job {job_id} marked failed", extra={"job_id": job_id, "error": message})
            return
        except Exception as e:
            logger.error(
                f"Failed to mark job {job_id} as failed: {e}",
                extra={"job_id": job_id, "error": message, "traceback": traceback.format_exc()},
            )


def _upstream_error_message(prediction: Dict[str, Any]) -> str:
    error = prediction.get("error")
    if isinstance(error, str) and error:
        return error
    if error:
        return json.dumps(error, default=str)
    return "3D model generation failed"


async def _start(job_id: str) -> Optional[Job]:
    """Claim the job. Returns None when there is nothing to run."""
    async with AsyncSessionLocal() as db:
        job = await job_store.get_job(db, job_id)
        if not job:
            logger.error(f"Job not found in database: {job_id}")
            return None

        if job.status == "pending":
            job = await job_store.update_job(db, job_id, status="processing")
            logger.info(f"Job {job_id} status updated to 'processing'", extra={"job_id": job_id})
            return job

        if job.status == "processing":
            # A re-delivered task: the earlier run died somewhere in the middle.
            raise PipelineInterrupted()

        logger.warning(f"Job {job_id} already {job.status}, skipping", extra={"job_id": job_id})
        return None


def _read_staged_images(staged_images: Sequence[Dict[str, str]]) -> List[RawImage]:
    return [
        RawImage(
            data=storage.read_staged_image(item["key"]),
            filename=item.get("filename") or "image.jpg",
            content_type=item.get("content_type") or "image/jpeg",
        )
        for item in staged_images
    ]


async def _upload_images(job_id: str, images: Sequence[PreprocessedImage]) -> List[Dict[str, Any]]:
    logger.info(f"Uploading {len(images)} images for job {job_id}", extra={"job_id": job_id})
    urls = await asyncio.gather(*[
        storage.upload_with_retry(image.data, image.filename, image.content_type, prefix=f"threed-jobs/{job_id}")
        for image in images
    ])
    return [
        {"url": url, "filename": image.filename, "size_bytes": image.compressed_size_bytes}
        for url, image in zip(urls, images)
    ]


def _first_output_url(prediction: Dict[str, Any]) -> Optional[str]:
    output = prediction.get("output")
    if isinstance(output, str):
        return output or None
    if isinstance(output, list):
        return next((item for item in output if isinstance(item, str) and item), None)
    return None


async def run_job_pipeline(
    job_id: str,
    staged_images: Sequence[Dict[str, str]],
    stop_event: Optional[threading.Event] = None,
) -> Optional[str]:
    """
    Run the whole pipeline for one job and return its final status, or None
    when the job was missing or already finished.
    """
    logger.info(f"Starting background processing for job {job_id}", extra={"job_id": job_id})
    try:
        job = await _start(job_id)
        if job is None:
            return None
        started = time.monotonic()

        raw_images = await asyncio.to_thread(_read_staged_images, staged_images)
        processed = await asyncio.to_thread(preprocess_images, raw_images)

        uploaded = await _upload_images(job_id, processed)
        await _persist(
            job_id,
            uploaded_images=uploaded,
            compression_stats=[image.stat() for image in processed],
        )
        logger.info(f"Uploaded {len(uploaded)} images for job {job_id}", extra={"job_id": job_id})

        prediction = await asyncio.to_thread(
            prediction_client.submit_prediction,
            [item["url"] for item in uploaded],
            job.request_params or {},
        )
        await _persist(job_id, prediction_id=prediction["id"], prediction_data=prediction)

        async def _record_snapshot(snapshot: Dict[str, Any]) -> None:
            await _persist(job_id, prediction_data=snapshot)

        final = await prediction_client.wait_for_completion(prediction, _record_snapshot, stop_event)
        if final.get("status") == "failed":
            raise UpstreamError(_upstream_error_message(final))

        original_model_url = _first_output_url(final)
        if not original_model_url:
            raise UpstreamError("Prediction succeeded but returned no model URL")

        rehost = await model_downloader.rehost_model(original_model_url, final.get("id") or prediction["id"])

        processing_time_ms = int((time.monotonic() - started) * 1000)
        metrics = final.get("metrics") or {}
        await _persist(
            job_id,
            status="completed",
            model_url=rehost.model_url,
            original_model_url=rehost.original_model_url,
            processing_time_ms=processing_time_ms,
            prediction_data=final,
            job_metadata=rehost.metadata(metrics.get("predict_time")),
        )
        logger.info(
            f"Job {job_id} completed successfully in {processing_time_ms / 1000:.1f}s",
            extra={
                "job_id": job_id,
                "processing_time_ms": processing_time_ms,
                "fallback_used": rehost.fallback_used,
            },
        )
        return "completed"

    except ThreeDJobBaseException as e:
        logger.error(
            f"Background processing failed for job {job_id}: {e.message}",
            extra={"job_id": job_id, "error_code": e.code, "error": e.message},
        )
        await _fail(job_id, e.message)
        return "failed"
    except Exception as e:
        logger.error(
            f"Background processing failed for job {job_id}: {e}",
            extra={"job_id": job_id, "error": str(e), "traceback": traceback.format_exc()},
        )
        await _fail(job_id, str(e) or type(e).__name__)
        return "failed"
    except asyncio.CancelledError:
        logger.warning(f"Background processing cancelled for job {job_id}", extra={"job_id": job_id})
        await _fail(job_id, PipelineInterrupted().message)
        raise
    finally:
        try:
            await asyncio.to_thread(storage.delete_staged_images, [item["key"] for item in staged_images])
        except Exception as e:
            logger.warning(f"Failed to clean up staged images for job {job_id}: {e}")
