from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional
import traceback
from .logger import logger


class ThreeDJobBaseException(Exception):
    """Base exception for the 3D generation service"""
    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


class InvalidInput(ThreeDJobBaseException):
    """Raised when a submission has the wrong image count or type"""
    def __init__(self, message: str = "Exactly 4 images are required for 3D model generation"):
        super().__init__(message, "INVALID_INPUT", 400)


class ConfigError(ThreeDJobBaseException):
    """Raised when a required credential or setting is missing"""
    def __init__(self, message: str = "Prediction service API key not configured"):
        super().__init__(message, "CONFIG_ERROR", 500)


class PreprocessError(ThreeDJobBaseException):
    """Raised when an image cannot be decoded or re-encoded"""
    def __init__(self, index: int, reason: str):
        self.index = index
        super().__init__(f"Failed to compress image {index + 1}: {reason}", "PREPROCESS_ERROR", 422)


class UploadError(ThreeDJobBaseException):
    """Raised when an artifact upload fails after all retries"""
    def __init__(self, message: str = "Artifact upload failed"):
        super().__init__(message, "UPLOAD_ERROR", 502)


class UpstreamError(ThreeDJobBaseException):
    """Raised on a non-2xx or malformed prediction service response"""
    def __init__(self, message: str, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        super().__init__(message, "UPSTREAM_ERROR", 502)


class PredictionTimeoutError(ThreeDJobBaseException):
    """Raised when the poll budget is exhausted without a terminal status"""
    def __init__(self, attempts: int, last_status: Optional[str]):
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Generation timed out after {attempts} status checks. Status: {last_status}",
            "PREDICTION_TIMEOUT",
            504,
        )


class PipelineInterrupted(ThreeDJobBaseException):
    """Raised when a worker drains or a re-delivered job cannot be resumed"""
    def __init__(self, message: str = "Pipeline was interrupted before completion"):
        super().__init__(message, "PIPELINE_INTERRUPTED", 503)


class S3StorageError(ThreeDJobBaseException):
    """Raised when S3 operations fail"""
    def __init__(self, message: str = "S3 storage operation failed"):
        super().__init__(message, "S3_STORAGE_ERROR", 502)


class JobNotFoundError(ThreeDJobBaseException):
    """Raised when job is not found"""
    def __init__(self, job_id: str):
        super().__init__(f"3D job with id {job_id} not found", "JOB_NOT_FOUND", 404)


class InvalidJobStateError(ThreeDJobBaseException):
    """Raised when a status transition is not allowed"""
    def __init__(self, job_id: str, current_state: str, requested_state: str):
        super().__init__(
            f"Job {job_id} cannot move from '{current_state}' to '{requested_state}'",
            "INVALID_JOB_STATE",
            400,
        )


async def threedjob_exception_handler(request: Request, exc: ThreeDJobBaseException):
    """Handle custom application exceptions"""
    logger.error(
        f"Application exception: {exc.code} - {exc.message}",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "status_code": exc.status_code,
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={
            "http_status_code": exc.status_code,
            "http_detail": exc.detail,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
            "status_code": exc.status_code,
        }
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
            "request_path": request.url.path,
            "exc_traceback": traceback.format_exc(),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An internal error occurred. Please try again later.",
        }
    )
