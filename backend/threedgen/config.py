from typing import Optional
from pydantic_settings import BaseSettings

MIB = 1024 * 1024

class Settings(BaseSettings):
    APP_VERSION: str = "1.0.0"

    DATABASE_URL: str = "postgresql+psycopg://user:password@db/dbname"

    AWS_ENDPOINT_URL: str
    AWS_ACCESS_KEY_ID: str
    AWS_SECRET_ACCESS_KEY: str
    AWS_REGION_NAME: str = "ru-1"
    S3_BUCKET_NAME: str
    # Public base for object URLs handed to the prediction service and clients.
    S3_PUBLIC_BASE_URL: Optional[str] = None

    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/0"

    PREDICTION_API_KEY: str = ""
    PREDICTION_BASE_URL: str = "https://api.synexa.ai/v1"
    PREDICTION_MODEL: str = "tencent/hunyuan3d-2"
    PREDICTION_REQUEST_TIMEOUT_SECONDS: float = 30.0
    PREDICTION_POLL_INTERVAL_SECONDS: float = 5.0
    PREDICTION_MAX_POLL_ATTEMPTS: int = 60

    IMAGE_COUNT: int = 4
    IMAGE_COMPRESSION_THRESHOLD_BYTES: int = 10 * MIB
    IMAGE_SECOND_PASS_THRESHOLD_BYTES: int = 5 * MIB
    IMAGE_MAX_DIMENSION: int = 1024
    IMAGE_QUALITY: int = 85
    IMAGE_SECOND_PASS_MAX_DIMENSION: int = 800
    IMAGE_SECOND_PASS_QUALITY: int = 75

    UPLOAD_RETRY_ATTEMPTS: int = 3
    UPLOAD_RETRY_DELAY_SECONDS: float = 2.0

    MODEL_DOWNLOAD_TIMEOUT_SECONDS: float = 30.0
    MODEL_REHOST_MAX_BYTES: int = 10 * MIB

    class Config:
        env_file = ".env"

settings = Settings()
