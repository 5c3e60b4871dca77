from celery import Celery
from .config import settings

THREED_QUEUE = "threed"

def _route_task(name, args, kwargs, options, task=None):
    """
    Route tasks to dedicated queues.

    Call sites fall back to `.delay(...)` when `.apply_async(..., queue=...)`
    fails; the router keeps routing identical in both cases.
    """
    if name == "threedgen.tasks.run_threed_job_task":
        return {"queue": THREED_QUEUE}

    return None

celery_app = Celery(
    "threedgen",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["threedgen.tasks"]
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # worker_shutting_down must fire in the process running the task.
    worker_pool="solo",
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_transport_options={"visibility_timeout": 3600},
    task_routes=(_route_task,),
)
