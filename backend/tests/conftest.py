import io
import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="threedgen-tests-")

# Settings are read at import time, so the environment must be ready first.
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/test.db"
os.environ["AWS_ENDPOINT_URL"] = "http://s3.test"
os.environ["AWS_ACCESS_KEY_ID"] = "test-access-key"
os.environ["AWS_SECRET_ACCESS_KEY"] = "test-secret-key"
os.environ["AWS_REGION_NAME"] = "us-east-1"
os.environ["S3_BUCKET_NAME"] = "test-bucket"
os.environ["PREDICTION_API_KEY"] = "test-prediction-key"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"

import pytest
import pytest_asyncio

from threedgen import storage
from threedgen.config import settings
from threedgen.db import AsyncSessionLocal, engine
from threedgen.models import Base


class DummyS3:
    def __init__(self, fail_puts=0, objects=None):
        self.fail_puts = fail_puts
        self.objects = dict(objects or {})
        self.put_calls = []
        self.deleted = []

    def put_object(self, **kwargs):
        if self.fail_puts:
            self.fail_puts -= 1
            raise RuntimeError("S3 unavailable")
        self.put_calls.append(kwargs)
        self.objects[kwargs["Key"]] = kwargs["Body"]
        return {}

    def get_object(self, **kwargs):
        return {"Body": io.BytesIO(self.objects[kwargs["Key"]])}

    def delete_object(self, **kwargs):
        self.deleted.append(kwargs["Key"])
        self.objects.pop(kwargs["Key"], None)
        return {}

    def keys_with_prefix(self, prefix):
        return [call["Key"] for call in self.put_calls if call["Key"].startswith(prefix)]


@pytest.fixture
def dummy_s3(monkeypatch):
    s3 = DummyS3()
    monkeypatch.setattr(storage, "s3", s3)
    return s3


@pytest.fixture
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_RETRY_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "PREDICTION_POLL_INTERVAL_SECONDS", 0.0)
    return settings


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
