from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, String, DateTime, Integer, Text, JSON
Base = declarative_base()

JOB_STATUSES = ("pending", "processing", "completed", "failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(Base):
    __tablename__ = "threed_jobs"
    job_id = Column(String, primary_key=True, index=True)
    status = Column(String, default="pending", index=True, nullable=False)

    session_id = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    username = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)

    request_params = Column(JSON, nullable=False)
    uploaded_images = Column(JSON, nullable=False, default=list)
    compression_stats = Column(JSON, nullable=False, default=list)

    prediction_id = Column(String, nullable=True)
    prediction_data = Column(JSON, nullable=True)

    model_url = Column(String, nullable=True)
    original_model_url = Column(String, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    job_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
