import asyncio
import threading
from typing import Dict, List
from celery.signals import worker_shutting_down
from .workers import celery_app
from .db import engine
from .pipeline import run_job_pipeline
from .logger import logger

# Set on warm shutdown of this (solo pool) worker: in-flight HTTP calls
# finish, but no new prediction poll tick is started.
shutdown_event = threading.Event()


@worker_shutting_down.connect
def _on_worker_shutting_down(sig=None, how=None, exitcode=None, **kwargs):
    logger.warning(f"Worker shutting down ({how}), draining pipeline runs")
    shutdown_event.set()


@celery_app.task(bind=True, acks_late=True)
def run_threed_job_task(self, job_id: str, staged_images: List[Dict[str, str]]):
    """
    Celery task running the full 3D generation pipeline for one job.
    """
    async def _run():
        try:
            return await run_job_pipeline(job_id, staged_images, stop_event=shutdown_event)
        finally:
            # Pooled connections are bound to this event loop.
            await engine.dispose()

    logger.info(f"Picked up 3D job: {job_id}", extra={"job_id": job_id, "celery_task_id": self.request.id})
    return asyncio.run(_run())
