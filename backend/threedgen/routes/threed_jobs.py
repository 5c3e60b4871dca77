"""
3D job routes - job creation, status read and listing
"""
from fastapi import APIRouter, Depends, UploadFile, File, Form, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import ValidationError
import asyncio
import uuid
from typing import List, Optional

from ..db import get_db
from ..models import Job
from ..schemas import (
    GenerationParams,
    JobStatus,
    ThreeDJob,
    ThreeDJobCreatedResponse,
    ThreeDJobListResponse,
    ThreeDJobResponse,
)
from ..config import settings
from .. import job_store, storage
from ..tasks import run_threed_job_task
from ..workers import THREED_QUEUE
from ..logger import logger
from ..exceptions import ConfigError, InvalidInput, JobNotFoundError

router = APIRouter(tags=["3D Jobs"])

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp")

def _job_to_schema(job: Job) -> ThreeDJob:
    """Convert Job model to the public snapshot"""
    return ThreeDJob(
        id=job.job_id,
        status=job.status,
        request_params=job.request_params or {},
        prediction_id=job.prediction_id,
        model_url=job.model_url,
        original_model_url=job.original_model_url,
        uploaded_images=job.uploaded_images or [],
        compression_stats=job.compression_stats or [],
        processing_time_ms=job.processing_time_ms,
        error_message=job.error_message,
        session_id=job.session_id,
        user_id=job.user_id,
        username=job.username,
        created_at=job.created_at,
        updated_at=job.updated_at,
        metadata=job.job_metadata or {},
    )

def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"

@router.post("/threed-jobs", response_model=ThreeDJobCreatedResponse, status_code=202)
async def create_threed_job(
    request: Request,
    files: Optional[List[UploadFile]] = File(None),
    caption: str = Form(""),
    steps: int = Form(20),
    guidance_scale: float = Form(7.5),
    octree_resolution: str = Form("256"),
    user_id: Optional[str] = Form(None),
    session_id: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Accept exactly four images and start 3D generation in the background.
    Returns the job id immediately; poll the status endpoint for progress.
    """
    files = files or []
    logger.info(
        "3D job creation request",
        extra={
            "file_count": len(files),
            "uploaded_files": [f.filename for f in files],
            "steps": steps,
            "guidance_scale": guidance_scale,
        }
    )

    if len(files) != settings.IMAGE_COUNT:
        raise InvalidInput(f"Exactly {settings.IMAGE_COUNT} images are required for 3D model generation")

    for f in files:
        if f.content_type not in ALLOWED_CONTENT_TYPES:
            raise InvalidInput(f"Invalid file type: {f.content_type}. Please use JPEG, PNG, or WebP.")

    if not settings.PREDICTION_API_KEY:
        raise ConfigError()

    try:
        params = GenerationParams(
            caption=caption,
            steps=steps,
            guidance_scale=guidance_scale,
            octree_resolution=octree_resolution or "256",
        )
    except ValidationError as e:
        raise InvalidInput(f"Invalid generation parameters: {e}")

    job_id = str(uuid.uuid4())
    staged = []
    for index, f in enumerate(files):
        data = await f.read()
        key = await asyncio.to_thread(
            storage.stage_raw_image, job_id, index, data, f.filename or "image.jpg", f.content_type
        )
        staged.append({"key": key, "filename": f.filename or "image.jpg", "content_type": f.content_type})

    job = await job_store.create_job(
        db,
        job_id=job_id,
        request_params=params.model_dump(),
        session_id=session_id,
        user_id=user_id,
        username=username,
        ip_address=_client_ip(request),
    )

    try:
        run_threed_job_task.apply_async(args=(job_id, staged), queue=THREED_QUEUE)
    except Exception as e:
        logger.warning(f"apply_async failed for job {job_id}, retrying with delay(): {e}")
        try:
            run_threed_job_task.delay(job_id, staged)
        except Exception as inner:
            logger.error(f"Failed to enqueue 3D job {job_id}: {inner}", extra={"job_id": job_id})
            await job_store.fail_job(db, job_id, f"Failed to queue job for processing: {inner}")
            raise HTTPException(status_code=503, detail="Job queue unavailable, please retry later")

    logger.info(f"3D job queued: {job_id}", extra={"job_id": job_id})
    return ThreeDJobCreatedResponse(
        job_id=job.job_id,
        polling_endpoint=f"/threed-jobs/{job.job_id}",
    )

@router.get("/threed-jobs/{job_id}", response_model=ThreeDJobResponse)
async def get_threed_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Get the full job snapshot"""
    job = await job_store.get_job(db, job_id)
    if not job:
        raise JobNotFoundError(job_id)
    return ThreeDJobResponse(job=_job_to_schema(job))

@router.get("/threed-jobs", response_model=ThreeDJobListResponse)
async def list_threed_jobs(
    status: Optional[JobStatus] = Query(None),
    user_id: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List jobs, newest first, optionally filtered by status, user or session"""
    jobs = await job_store.list_jobs(
        db,
        status=status.value if status else None,
        user_id=user_id,
        session_id=session_id,
        limit=limit,
    )
    return ThreeDJobListResponse(jobs=[_job_to_schema(job) for job in jobs])
