import asyncio
import random
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import requests
from ..config import settings
from ..exceptions import ConfigError, UpstreamError, PredictionTimeoutError, PipelineInterrupted
from ..logger import logger

TERMINAL_PREDICTION_STATUSES = ("succeeded", "failed")
MULTIPLE_VIEW_SLOTS = 3

session = requests.Session()

OnUpdate = Callable[[Dict[str, Any]], Awaitable[None]]


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_PREDICTION_STATUSES


def _headers() -> Dict[str, str]:
    if not settings.PREDICTION_API_KEY:
        raise ConfigError()
    return {
        "x-api-key": settings.PREDICTION_API_KEY,
        "Content-Type": "application/json",
    }


def _url(path: str) -> str:
    return f"{settings.PREDICTION_BASE_URL.rstrip('/')}/{path.lstrip('/')}"


def pad_multiple_views(view_urls: Sequence[Optional[str]]) -> List[Optional[str]]:
    views = list(view_urls[:MULTIPLE_VIEW_SLOTS])
    return views + [None] * (MULTIPLE_VIEW_SLOTS - len(views))


def build_prediction_input(image_urls: Sequence[str], params: Dict[str, Any], seed: Optional[int] = None) -> dict:
    """
    The first URL is the primary view; the rest fill exactly three
    `multiple_views` slots, padded with None.
    """
    if not image_urls:
        raise ValueError("At least one image URL is required")
    main_image, *other_views = image_urls
    return {
        "seed": seed if seed is not None else random.randint(0, 9999),
        "image": main_image,
        "multiple_views": pad_multiple_views(other_views),
        "caption": params.get("caption") or "",
        "steps": params.get("steps", 20),
        "shape_only": False,
        "guidance_scale": params.get("guidance_scale", 7.5),
        "check_box_rembg": True,
        "octree_resolution": params.get("octree_resolution", "256"),
    }


def _parse_prediction(resp: requests.Response, action: str) -> Dict[str, Any]:
    if not resp.ok:
        raise UpstreamError(
            f"Prediction API error during {action}: {resp.status_code} - {resp.text}",
            upstream_status=resp.status_code,
        )
    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamError(f"Prediction API returned invalid JSON during {action}: {e}")
    if not isinstance(data, dict) or not data.get("id") or not data.get("status"):
        raise UpstreamError(f"Prediction API returned a malformed response during {action}")
    return data


def submit_prediction(image_urls: Sequence[str], params: Dict[str, Any]) -> Dict[str, Any]:
    """Start one generation. Returns the upstream prediction object."""
    headers = _headers()
    body = {"model": settings.PREDICTION_MODEL, "input": build_prediction_input(image_urls, params)}

    logger.debug(f"Submitting prediction to {_url('predictions')}")
    try:
        resp = session.post(
            _url("predictions"),
            json=body,
            headers=headers,
            timeout=settings.PREDICTION_REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        raise UpstreamError(f"Prediction API request failed: {e}")

    prediction = _parse_prediction(resp, "submit")
    logger.info(
        f"Prediction started: {prediction['id']}",
        extra={"prediction_id": prediction["id"], "prediction_status": prediction["status"]},
    )
    return prediction


def get_prediction(prediction_id: str) -> Dict[str, Any]:
    try:
        resp = session.get(
            _url(f"predictions/{prediction_id}"),
            headers=_headers(),
            timeout=settings.PREDICTION_REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        raise UpstreamError(f"Prediction status request failed: {e}")
    return _parse_prediction(resp, "status check")


async def _wait(seconds: float, stop_event: Optional[threading.Event]) -> bool:
    """Sleep between ticks. Returns True when a drain was requested."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    return await asyncio.to_thread(stop_event.wait, seconds)


async def wait_for_completion(
    prediction: Dict[str, Any],
    on_update: Optional[OnUpdate] = None,
    stop_event: Optional[threading.Event] = None,
    *,
    interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Poll until the prediction reaches `succeeded` or `failed`.

    A failed status check is logged and counts against the attempt budget but
    never ends the loop by itself. Running out of attempts raises
    PredictionTimeoutError; a set stop_event stops new ticks and raises
    PipelineInterrupted.
    """
    interval = settings.PREDICTION_POLL_INTERVAL_SECONDS if interval is None else interval
    max_attempts = max_attempts or settings.PREDICTION_MAX_POLL_ATTEMPTS
    prediction_id = prediction["id"]
    current = prediction
    attempts = 0

    logger.info(f"Polling prediction {prediction_id}", extra={"prediction_id": prediction_id})
    while not is_terminal(current.get("status")):
        if attempts >= max_attempts:
            raise PredictionTimeoutError(attempts, current.get("status"))

        if await _wait(interval, stop_event):
            logger.warning(
                f"Stopped polling prediction {prediction_id}: worker is shutting down",
                extra={"prediction_id": prediction_id, "attempt": attempts},
            )
            raise PipelineInterrupted("Worker shut down while waiting for the prediction")

        attempts += 1
        try:
            current = await asyncio.to_thread(get_prediction, prediction_id)
        except Exception as e:
            logger.warning(
                f"Status check error for prediction {prediction_id}, attempt {attempts}: {e}",
                extra={"prediction_id": prediction_id, "attempt": attempts},
            )
            continue

        logger.info(
            f"Prediction {prediction_id} poll {attempts}: {current.get('status')}",
            extra={"prediction_id": prediction_id, "attempt": attempts, "prediction_status": current.get("status")},
        )
        if on_update:
            try:
                await on_update(current)
            except Exception as e:
                logger.warning(f"Failed to persist prediction snapshot for {prediction_id}: {e}")

    return current
