from __future__ import annotations

from typing import Optional


PROGRESS_CAP = 95


def is_job_final(status: str) -> bool:
    return status in ("completed", "failed")


def estimate_progress(status: str, attempt: int, previous: int = 0) -> int:
    """
    Map a job status and poll attempt number to a 0-100 UX progress value.

    This is a heuristic, not a measurement of pipeline work:
    - pending: starts at 5% and creeps up 2% per attempt.
    - processing: starts at 20% and climbs 3% per attempt.
    - anything non-terminal is capped at 95% and never drops below `previous`.
    - completed is 100%, failed is 0%.
    """
    if status == "completed":
        return 100
    if status == "failed":
        return 0

    if status == "pending":
        progress = 5 + attempt * 2
    elif status == "processing":
        progress = 20 + attempt * 3
    else:
        progress = previous

    return min(max(progress, previous), PROGRESS_CAP)


def status_message(status: str, progress: Optional[int] = None) -> str:
    if status == "pending":
        return "Queued for processing..."
    if status == "processing":
        return f"Processing ({progress}% complete)" if progress else "Processing..."
    if status == "completed":
        return "3D model generation complete!"
    if status == "failed":
        return "Generation failed"
    return "Unknown status"
