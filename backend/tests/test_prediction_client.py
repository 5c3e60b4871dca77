import threading

import pytest
import requests

from threedgen.config import settings
from threedgen.exceptions import ConfigError, PipelineInterrupted, PredictionTimeoutError, UpstreamError
from threedgen.inference import prediction_client


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    def __init__(self, post_response=None, get_responses=None):
        self.post_response = post_response
        self.get_responses = list(get_responses or [])
        self.posts = []
        self.gets = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers})
        return self.post_response

    def get(self, url, headers=None, timeout=None):
        self.gets.append(url)
        item = self.get_responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_pad_multiple_views():
    assert prediction_client.pad_multiple_views(["b"]) == ["b", None, None]
    assert prediction_client.pad_multiple_views(["b", "c", "d", "e"]) == ["b", "c", "d"]


def test_build_prediction_input_defaults():
    body = prediction_client.build_prediction_input(["a", "b", "c", "d"], {"steps": 30}, seed=7)
    assert body == {
        "seed": 7,
        "image": "a",
        "multiple_views": ["b", "c", "d"],
        "caption": "",
        "steps": 30,
        "shape_only": False,
        "guidance_scale": 7.5,
        "check_box_rembg": True,
        "octree_resolution": "256",
    }
    assert 0 <= prediction_client.build_prediction_input(["a"], {})["seed"] <= 9999


def test_submit_without_api_key_makes_no_request(monkeypatch):
    dummy = DummySession()
    monkeypatch.setattr(prediction_client, "session", dummy)
    monkeypatch.setattr(settings, "PREDICTION_API_KEY", "")

    with pytest.raises(ConfigError):
        prediction_client.submit_prediction(["a", "b", "c", "d"], {})
    assert dummy.posts == []


def test_submit_sends_model_and_input(monkeypatch):
    dummy = DummySession(post_response=DummyResponse(201, {"id": "p1", "status": "starting"}))
    monkeypatch.setattr(prediction_client, "session", dummy)

    prediction = prediction_client.submit_prediction(["a", "b", "c", "d"], {"caption": "chair"})

    assert prediction["id"] == "p1"
    sent = dummy.posts[0]
    assert sent["url"].endswith("/predictions")
    assert sent["headers"]["x-api-key"] == settings.PREDICTION_API_KEY
    assert sent["json"]["model"] == settings.PREDICTION_MODEL
    assert sent["json"]["input"]["caption"] == "chair"


@pytest.mark.parametrize(
    "response",
    [
        DummyResponse(500, text="boom"),
        DummyResponse(200, None),
        DummyResponse(200, {"status": "starting"}),
    ],
)
def test_submit_rejects_bad_upstream_responses(monkeypatch, response):
    monkeypatch.setattr(prediction_client, "session", DummySession(post_response=response))
    with pytest.raises(UpstreamError):
        prediction_client.submit_prediction(["a"], {})


def test_upstream_status_is_recorded(monkeypatch):
    monkeypatch.setattr(prediction_client, "session", DummySession(post_response=DummyResponse(429, text="slow down")))
    with pytest.raises(UpstreamError) as exc:
        prediction_client.submit_prediction(["a"], {})
    assert exc.value.upstream_status == 429
    assert "429" in exc.value.message


@pytest.mark.asyncio
async def test_wait_returns_terminal_prediction_without_polling(monkeypatch):
    dummy = DummySession()
    monkeypatch.setattr(prediction_client, "session", dummy)

    prediction = {"id": "p1", "status": "succeeded", "output": ["https://x/model.glb"]}
    result = await prediction_client.wait_for_completion(prediction, interval=0)

    assert result is prediction
    assert dummy.gets == []


@pytest.mark.asyncio
async def test_wait_absorbs_transient_errors(monkeypatch):
    dummy = DummySession(get_responses=[
        requests.ConnectionError("reset"),
        DummyResponse(503, text="unavailable"),
        DummyResponse(200, {"id": "p1", "status": "processing"}),
        DummyResponse(200, {"id": "p1", "status": "succeeded", "output": ["u"]}),
    ])
    monkeypatch.setattr(prediction_client, "session", dummy)
    seen = []

    async def on_update(snapshot):
        seen.append(snapshot["status"])

    result = await prediction_client.wait_for_completion(
        {"id": "p1", "status": "starting"}, on_update, interval=0, max_attempts=10
    )

    assert result["status"] == "succeeded"
    assert len(dummy.gets) == 4
    assert seen == ["processing", "succeeded"]


@pytest.mark.asyncio
async def test_wait_survives_failing_update_callback(monkeypatch):
    dummy = DummySession(get_responses=[DummyResponse(200, {"id": "p1", "status": "failed", "error": "bad"})])
    monkeypatch.setattr(prediction_client, "session", dummy)

    async def on_update(snapshot):
        raise RuntimeError("db down")

    result = await prediction_client.wait_for_completion({"id": "p1", "status": "starting"}, on_update, interval=0)
    assert result["status"] == "failed"


@pytest.mark.asyncio
async def test_wait_times_out(monkeypatch):
    dummy = DummySession(get_responses=[DummyResponse(200, {"id": "p1", "status": "processing"})] * 5)
    monkeypatch.setattr(prediction_client, "session", dummy)

    with pytest.raises(PredictionTimeoutError) as exc:
        await prediction_client.wait_for_completion({"id": "p1", "status": "starting"}, interval=0, max_attempts=5)

    assert len(dummy.gets) == 5
    assert exc.value.message == "Generation timed out after 5 status checks. Status: processing"


@pytest.mark.asyncio
async def test_wait_stops_when_drained(monkeypatch):
    dummy = DummySession()
    monkeypatch.setattr(prediction_client, "session", dummy)
    stop_event = threading.Event()
    stop_event.set()

    with pytest.raises(PipelineInterrupted):
        await prediction_client.wait_for_completion({"id": "p1", "status": "starting"}, stop_event=stop_event, interval=0)
    assert dummy.gets == []
