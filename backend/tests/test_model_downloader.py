import pytest
import requests

from threedgen.inference import model_downloader
from threedgen.inference.model_downloader import ModelTooLargeError

ORIGINAL_URL = "https://upstream.example/outputs/model.glb"


class StreamingResponse:
    def __init__(self, chunks, headers=None, status_code=200):
        self.chunks = chunks
        self.headers = headers or {}
        self.status_code = status_code

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=None):
        yield from self.chunks


class StreamingSession:
    def __init__(self, response):
        self.response = response

    def get(self, url, stream=False, timeout=None):
        return self.response


def test_download_rejects_declared_oversize(monkeypatch):
    resp = StreamingResponse([b"x"], headers={"Content-Length": "2048"})
    monkeypatch.setattr(model_downloader, "session", StreamingSession(resp))

    with pytest.raises(ModelTooLargeError) as exc:
        model_downloader.download_model(ORIGINAL_URL, max_bytes=1024)
    assert exc.value.size_bytes == 2048


def test_download_stops_streaming_past_ceiling(monkeypatch):
    resp = StreamingResponse([b"a" * 600, b"b" * 600, b"c" * 600])
    monkeypatch.setattr(model_downloader, "session", StreamingSession(resp))

    with pytest.raises(ModelTooLargeError) as exc:
        model_downloader.download_model(ORIGINAL_URL, max_bytes=1000)
    assert exc.value.size_bytes == 1200


def test_download_returns_body(monkeypatch):
    resp = StreamingResponse([b"gl", b"TF"], headers={"Content-Length": "4"})
    monkeypatch.setattr(model_downloader, "session", StreamingSession(resp))
    assert model_downloader.download_model(ORIGINAL_URL, max_bytes=1024) == b"glTF"


@pytest.mark.asyncio
async def test_rehost_uploads_model(monkeypatch, dummy_s3, fast_settings):
    monkeypatch.setattr(model_downloader, "download_model", lambda url: b"glTF-binary")

    result = await model_downloader.rehost_model(ORIGINAL_URL, "pred-1")

    assert result.uploaded is True
    assert result.fallback_used is False
    assert result.model_url != ORIGINAL_URL
    assert result.original_model_url == ORIGINAL_URL
    (put,) = dummy_s3.put_calls
    assert put["Key"].startswith("models/")
    assert put["Key"].endswith("_3d_model_pred-1.glb")
    assert put["ContentType"] == "model/gltf-binary"
    assert result.metadata(12.5)["upload_info"]["storage_url"] == result.model_url


@pytest.mark.asyncio
async def test_rehost_falls_back_when_too_large(monkeypatch, dummy_s3, fast_settings):
    def too_large(url):
        raise ModelTooLargeError(15 * 1024 * 1024, 10 * 1024 * 1024)

    monkeypatch.setattr(model_downloader, "download_model", too_large)

    result = await model_downloader.rehost_model(ORIGINAL_URL, "pred-1")

    assert result.model_url == ORIGINAL_URL
    assert result.attempted_upload is False
    assert result.fallback_reason == "too_large"
    assert dummy_s3.put_calls == []
    info = result.metadata()["upload_info"]
    assert info["fallback_used"] is True
    assert info["storage_url"] is None


@pytest.mark.asyncio
async def test_rehost_falls_back_on_download_error(monkeypatch, dummy_s3, fast_settings):
    def unreachable(url):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(model_downloader, "download_model", unreachable)

    result = await model_downloader.rehost_model(ORIGINAL_URL, "pred-1")

    assert result.model_url == ORIGINAL_URL
    assert result.fallback_reason == "download_failed"
    assert dummy_s3.put_calls == []


@pytest.mark.asyncio
async def test_rehost_falls_back_when_upload_keeps_failing(monkeypatch, dummy_s3, fast_settings):
    monkeypatch.setattr(model_downloader, "download_model", lambda url: b"glTF-binary")
    dummy_s3.fail_puts = 10

    result = await model_downloader.rehost_model(ORIGINAL_URL, "pred-1")

    assert result.model_url == ORIGINAL_URL
    assert result.attempted_upload is True
    assert result.uploaded is False
    assert result.fallback_reason == "upload_failed"
    assert dummy_s3.fail_puts == 10 - fast_settings.UPLOAD_RETRY_ATTEMPTS


@pytest.mark.asyncio
async def test_rehost_retries_transient_upload_failure(monkeypatch, dummy_s3, fast_settings):
    monkeypatch.setattr(model_downloader, "download_model", lambda url: b"glTF-binary")
    dummy_s3.fail_puts = 1

    result = await model_downloader.rehost_model(ORIGINAL_URL, "pred-1")

    assert result.uploaded is True
    assert len(dummy_s3.put_calls) == 1
