"""
Pydantic schemas for request/response validation
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

# ===== Common Schemas =====

class HealthResponse(BaseModel):
    status: str

class VersionResponse(BaseModel):
    version: str

# ===== 3D Job Schemas =====

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

class GenerationParams(BaseModel):
    caption: str = ""
    steps: int = Field(default=20, ge=1, le=100)
    guidance_scale: float = Field(default=7.5, gt=0)
    octree_resolution: str = "256"

class UploadedImage(BaseModel):
    url: str
    filename: str
    size_bytes: int

class CompressionStat(BaseModel):
    filename: str
    original_size_bytes: int
    compressed_size_bytes: int
    compression_ratio: float

class ThreeDJob(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    status: JobStatus
    request_params: GenerationParams
    prediction_id: Optional[str] = None
    model_url: Optional[str] = None
    original_model_url: Optional[str] = None
    uploaded_images: List[UploadedImage] = []
    compression_stats: List[CompressionStat] = []
    processing_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    metadata: Dict[str, Any] = {}

class ThreeDJobResponse(BaseModel):
    success: bool = True
    job: ThreeDJob

class ThreeDJobListResponse(BaseModel):
    jobs: List[ThreeDJob]

class ThreeDJobCreatedResponse(BaseModel):
    success: bool = True
    message: str = "3D model generation job started"
    job_id: str
    status: JobStatus = JobStatus.PENDING
    estimated_completion_time: str = "2-5 minutes"
    polling_endpoint: str
