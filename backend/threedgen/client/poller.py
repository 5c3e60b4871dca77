"""
Requesting-side status poller for 3D jobs.

Runs outside the API and worker processes: it only talks to the status
endpoint over HTTP and never touches the job store.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import requests

from ..logger import logger
from ..services.progress import estimate_progress, is_job_final

POLLING_INTERVAL_SECONDS = 5.0
MAX_POLLING_ATTEMPTS = 60
MAX_BACKOFF_SECONDS = 30.0

ProgressCallback = Callable[[int, str, Dict[str, Any]], None]
FetchStatus = Callable[[str], Dict[str, Any]]


class PollingError(Exception):
    """Base class for poller failures"""


class PollingCancelled(PollingError):
    """Raised when the caller cancels polling"""
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Polling of job {job_id} was cancelled")


class PollingTimeout(PollingError):
    """Raised when the attempt budget runs out before a terminal status"""
    def __init__(self, job_id: str, attempts: int, last_error: Optional[BaseException] = None):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        message = f"3D job {job_id} polling timed out after {attempts} attempts"
        if last_error is not None:
            message += f". Last error: {last_error}"
        super().__init__(message)


class StatusClient:
    """Thin HTTP client for the job API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self.session = session or requests.Session()

    def get_job(self, job_id: str) -> Dict[str, Any]:
        resp = self.session.get(
            f"{self.base_url}/threed-jobs/{job_id}",
            headers=self.headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        if not data.get("success") or not data.get("job"):
            raise ValueError("Invalid response format from 3D job API")
        return data["job"]

    def create_job(
        self,
        files: Iterable[Tuple[str, bytes, str]],
        params: Optional[Dict[str, Any]] = None,
        **attribution: Optional[str],
    ) -> Dict[str, Any]:
        """Submit (filename, data, content_type) triples. Returns the creation payload."""
        form = {k: str(v) for k, v in (params or {}).items() if v is not None}
        form.update({k: v for k, v in attribution.items() if v})
        resp = self.session.post(
            f"{self.base_url}/threed-jobs",
            files=[("files", (name, data, ctype)) for name, data, ctype in files],
            data=form,
            headers=self.headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()


def backoff_delay(interval: float, attempt: int, max_backoff: float = MAX_BACKOFF_SECONDS) -> float:
    return min(interval * 1.5 ** (attempt - 1), max_backoff)


def _wait(cancel_event: Optional[threading.Event], seconds: float) -> bool:
    """Returns True when cancelled during the wait."""
    if cancel_event is None:
        time.sleep(seconds)
        return False
    return cancel_event.wait(seconds)


def poll_job(
    job_id: str,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
    *,
    fetch_status: Optional[FetchStatus] = None,
    base_url: Optional[str] = None,
    interval: float = POLLING_INTERVAL_SECONDS,
    max_attempts: int = MAX_POLLING_ATTEMPTS,
    max_backoff: float = MAX_BACKOFF_SECONDS,
) -> Dict[str, Any]:
    """
    Poll a job until it is `completed` or `failed` and return that snapshot.

    Fetch errors are retried with exponential backoff inside the same attempt
    budget. Setting `cancel_event` stops polling at once with PollingCancelled;
    running out of attempts raises PollingTimeout.
    """
    if fetch_status is None:
        if not base_url:
            raise ValueError("Either fetch_status or base_url is required")
        fetch_status = StatusClient(base_url).get_job

    progress = 0
    last_error: Optional[BaseException] = None

    logger.info(f"Starting client-side polling for 3D job: {job_id}", extra={"job_id": job_id})
    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise PollingCancelled(job_id)

        try:
            job = fetch_status(job_id)
        except Exception as e:
            last_error = e
            logger.warning(
                f"Polling attempt {attempt} failed for job {job_id}, will retry: {e}",
                extra={"job_id": job_id, "attempt": attempt},
            )
            if attempt >= max_attempts:
                break
            if _wait(cancel_event, backoff_delay(interval, attempt, max_backoff)):
                raise PollingCancelled(job_id)
            continue

        status = job.get("status", "")
        progress = estimate_progress(status, attempt, progress)
        if on_progress:
            on_progress(progress, status, job)

        logger.info(
            f"Job {job_id} status: {status} ({progress}%)",
            extra={"job_id": job_id, "attempt": attempt, "status": status, "progress": progress},
        )
        if is_job_final(status):
            return job

        if attempt >= max_attempts:
            break
        if _wait(cancel_event, interval):
            raise PollingCancelled(job_id)

    raise PollingTimeout(job_id, max_attempts, last_error)
