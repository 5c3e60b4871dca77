from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import InvalidJobStateError, JobNotFoundError
from .logger import logger
from .models import Job, JOB_STATUSES

# pending -> processing -> {completed, failed}; nothing ever moves backward.
ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    "pending": ("processing",),
    "processing": ("completed", "failed"),
    "completed": (),
    "failed": (),
}

UPDATABLE_FIELDS = frozenset({
    "status",
    "uploaded_images",
    "compression_stats",
    "prediction_id",
    "prediction_data",
    "model_url",
    "original_model_url",
    "processing_time_ms",
    "error_message",
    "job_metadata",
})

DEFAULT_FAILURE_MESSAGE = "3D model generation failed with unknown error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, ())


async def create_job(
    db: AsyncSession,
    *,
    job_id: str,
    request_params: Dict[str, Any],
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    username: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Job:
    now = _utcnow()
    job = Job(
        job_id=job_id,
        status="pending",
        session_id=session_id,
        user_id=user_id,
        username=username,
        ip_address=ip_address,
        request_params=dict(request_params),
        uploaded_images=[],
        compression_stats=[],
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    logger.info(f"Created 3D job {job_id}", extra={"job_id": job_id})
    return job


async def get_job(db: AsyncSession, job_id: str) -> Optional[Job]:
    res = await db.execute(select(Job).filter(Job.job_id == job_id))
    return res.scalar_one_or_none()


async def list_jobs(
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    limit: int = 50,
) -> List[Job]:
    query = select(Job)
    if status:
        query = query.filter(Job.status == status)
    if user_id:
        query = query.filter(Job.user_id == user_id)
    if session_id:
        query = query.filter(Job.session_id == session_id)
    query = query.order_by(Job.created_at.desc()).limit(limit)
    res = await db.execute(query)
    return list(res.scalars().all())


async def update_job(db: AsyncSession, job_id: str, **fields: Any) -> Job:
    """
    Apply a partial update to a job.

    Status changes are checked against ALLOWED_TRANSITIONS and an existing
    error_message is never overwritten with an empty value. updated_at is
    bumped on every call.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")

    job = await get_job(db, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    requested = fields.get("status")
    if requested is not None and requested != job.status:
        if requested not in JOB_STATUSES or not can_transition(job.status, requested):
            raise InvalidJobStateError(job_id, job.status, requested)
    elif requested is not None and requested == job.status:
        fields.pop("status")

    if "error_message" in fields and not fields["error_message"] and job.error_message:
        fields.pop("error_message")

    for key, value in fields.items():
        setattr(job, key, value)
    job.updated_at = _utcnow()

    await db.commit()
    await db.refresh(job)
    return job


async def fail_job(db: AsyncSession, job_id: str, error_message: str) -> Optional[Job]:
    """
    Move a job to `failed`, passing through `processing` when it is still
    pending. Jobs already in a terminal state are left untouched.
    """
    job = await get_job(db, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status in ("completed", "failed"):
        logger.warning(
            f"Job {job_id} already terminal ({job.status}), not marking failed",
            extra={"job_id": job_id, "status": job.status, "error": error_message},
        )
        return job

    if job.status == "pending":
        await update_job(db, job_id, status="processing")

    return await update_job(
        db,
        job_id,
        status="failed",
        error_message=error_message or DEFAULT_FAILURE_MESSAGE,
    )
