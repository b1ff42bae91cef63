"""
FastAPI application for the audio transcription service.

This module exposes the pipeline over HTTP: uploads create a job, and the
job, file and segment endpoints let clients poll the state the pipeline
writes to the store.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, List, Optional
from uuid import uuid4

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from audio_transcription.api_models import (
    ErrorResponse,
    FileResponse,
    HealthResponse,
    JobResponse,
    SegmentResponse,
    SegmentsResponse,
    TranscribeResponse,
)
from audio_transcription.backends import UnsupportedModelError, validate_model
from audio_transcription.config import TranscriptionModel, settings
from audio_transcription.logging_config import get_logger, log_with_context, setup_logging
from audio_transcription.pipeline import TranscriptionPipeline
from audio_transcription.task_queue import QueueFullError

# Configure structured logging
setup_logging(
    log_level=settings.log_level.value,
    use_json=True
)
logger = get_logger(__name__)

MAX_FILE_SIZE_MB = settings.max_file_size_mb
MAX_FILE_SIZE_BYTES = settings.get_max_file_size_bytes()
UPLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MB
CLEANUP_INTERVAL_SECONDS = 3600  # hourly

# Global pipeline instance
pipeline: Optional[TranscriptionPipeline] = None

# Background task expiring finished jobs
cleanup_task: Optional[asyncio.Task] = None


async def run_periodic_cleanup(
    active_pipeline: TranscriptionPipeline,
    interval_seconds: float = CLEANUP_INTERVAL_SECONDS
) -> None:
    """
    Remove finished jobs older than JOB_CLEANUP_MAX_AGE_HOURS, forever.

    Runs until cancelled; a failing pass is logged and retried on the next
    interval.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = active_pipeline.cleanup_old_jobs()
        except Exception as e:
            log_with_context(logger, "error", "Job cleanup failed", error=e)
            continue
        logger.debug(f"Job cleanup pass removed {removed} job(s)")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifespan events.

    Builds the pipeline (and with it the task workers) and starts the job
    cleanup task on startup; stops both on shutdown.
    """
    global pipeline, cleanup_task

    logger.info("Audio transcription service starting up...")
    logger.info(settings.display())

    # Ensure the upload directory exists
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    pipeline = TranscriptionPipeline(settings=settings)
    # Start the job cleanup loop
    cleanup_task = asyncio.create_task(run_periodic_cleanup(pipeline))
    logger.info("Application startup complete")

    yield

    logger.info("Audio transcription service shutting down...")

    # Stop the cleanup loop before the pipeline goes away
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    cleanup_task = None

    # Waits for running stage tasks and chunks
    pipeline.shutdown()
    pipeline = None
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Audio Transcription API",
    description="""
    Upload audio or video files and receive time-aligned transcripts.

    ## Workflow

    1. Upload a file to `POST /api/v1/transcribe` (optionally naming a `model`)
    2. Poll `GET /api/v1/jobs/{job_id}` for status and chunk progress
    3. Fetch `GET /api/v1/segments/{file_id}` once the job is COMPLETED
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS for browser clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, code: str, message: str, details=None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message, "details": details}}
    )


def _require_pipeline() -> TranscriptionPipeline:
    if pipeline is None:
        raise _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "SERVICE_UNAVAILABLE",
            "Transcription pipeline is not available"
        )
    return pipeline


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with its status code and processing time."""
    start_time = time.time()

    # Process request
    response = await call_next(request)
    process_time = time.time() - start_time

    log_with_context(
        logger,
        "info",
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2)
    )
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> JSONResponse:
    """
    Return HTTP errors in the same format as every other error.

    Endpoints raise with ``detail={"error": {...}}``, which is sent as the
    body unchanged; plain string details (unknown routes, wrong methods)
    are wrapped into the same structure.
    """
    # Endpoint errors already carry the error body
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    # Framework errors (unknown route, wrong method) carry a plain string
    else:
        content = {
            "error": {
                "code": f"HTTP_{exc.status_code}",
                "message": str(exc.detail),
                "details": None
            }
        }

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request validation errors with consistent error format.

    Returns 400 Bad Request with error details.
    """
    log_with_context(
        logger,
        "warning",
        "Validation error",
        path=request.url.path,
        method=request.method,
        errors=str(exc.errors())
    )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid request data",
                "details": str(exc.errors())
            }
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """
    Handle all other exceptions with consistent error format.

    Returns 500 Internal Server Error for unexpected errors.
    """
    log_with_context(
        logger,
        "error",
        "Unexpected error",
        path=request.url.path,
        method=request.method,
        error=exc
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": str(exc)
            }
        }
    )


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Check service health status"
)
async def health_check() -> HealthResponse:
    """Report service health and the transcription backends it accepts."""
    return HealthResponse(
        status="healthy" if pipeline is not None else "starting",
        default_model=settings.default_model.value,
        supported_models=[m.value for m in TranscriptionModel]
    )


@app.get(
    "/api/v1/capacity",
    tags=["Health"],
    summary="Get task queue capacity and load information",
    responses={503: {"model": ErrorResponse}}
)
async def get_capacity() -> dict:
    """
    Get current task queue load.

    Returns active and queued stage tasks, worker count, queue size and
    whether new uploads would currently be rejected.
    """
    active_pipeline = _require_pipeline()
    capacity_info = active_pipeline.task_queue.get_capacity_info()
    # Uploads are rejected once the queue is full
    capacity_info["at_capacity"] = active_pipeline.task_queue.is_at_capacity()
    return capacity_info


@app.post(
    "/api/v1/transcribe",
    response_model=TranscribeResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Transcription"],
    summary="Upload a media file for transcription",
    responses={
        400: {"model": ErrorResponse, "description": "Unsupported model or invalid request"},
        413: {"model": ErrorResponse, "description": "File size exceeds maximum limit"},
        503: {"model": ErrorResponse, "description": "Service unavailable or at capacity"},
    }
)
async def create_transcription(
    audio: UploadFile = File(..., description="Audio or video file to transcribe"),
    model: Optional[str] = Form(None, description="Transcription backend identifier")
) -> TranscribeResponse:
    """
    Upload a media file and start its transcription.

    The requested model is validated before the upload is stored; unknown
    backends are rejected with ``UNSUPPORTED_MODEL`` and no job is created.

    Example (curl):
        ```bash
        curl -X POST http://localhost:8000/api/v1/transcribe \\
             -F "audio=@meeting.mp4" -F "model=elevenlabs-scribe"
        ```
    """
    active_pipeline = _require_pipeline()

    # Validate the model before anything is written to disk
    try:
        requested_model = validate_model(model or settings.default_model)
    except UnsupportedModelError as e:
        raise _error(status.HTTP_400_BAD_REQUEST, "UNSUPPORTED_MODEL", str(e))

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    # Stored under a fresh name; the original name lives on the record
    suffix = Path(audio.filename or "upload").suffix
    upload_path = upload_dir / f"{uuid4()}{suffix}"

    # Stream to disk in chunks, enforcing the size limit as we go
    file_size = 0
    with open(upload_path, "wb") as out:
        while True:
            chunk = await audio.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            file_size += len(chunk)
            if file_size > MAX_FILE_SIZE_BYTES:
                out.close()
                upload_path.unlink(missing_ok=True)
                raise _error(
                    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    "FILE_TOO_LARGE",
                    f"File size exceeds maximum limit of {MAX_FILE_SIZE_MB} MB"
                )
            out.write(chunk)

    # Reject empty uploads
    if file_size == 0:
        upload_path.unlink(missing_ok=True)
        raise _error(status.HTTP_400_BAD_REQUEST, "EMPTY_FILE", "Uploaded file is empty")

    # Create the job and queue preprocessing
    try:
        job = active_pipeline.submit(
            upload_path,
            original_filename=audio.filename,
            model=requested_model.value
        )
    except QueueFullError as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "AT_CAPACITY", str(e))

    log_with_context(
        logger,
        "info",
        "Upload accepted",
        job_id=job.job_id,
        file_id=job.file_id,
        file_size=file_size
    )

    return TranscribeResponse(
        job_id=job.job_id,
        file_id=job.file_id,
        file_path=str(upload_path),
        status=job.status.value
    )


@app.get(
    "/api/v1/jobs/{job_id}",
    response_model=JobResponse,
    tags=["Transcription"],
    summary="Get job status and chunk progress",
    responses={404: {"model": ErrorResponse}}
)
async def get_job(job_id: str) -> JobResponse:
    """Return the job's status, chunk counters and media file."""
    active_pipeline = _require_pipeline()
    job = active_pipeline.get_job(job_id)
    if job is None:
        raise _error(status.HTTP_404_NOT_FOUND, "JOB_NOT_FOUND", f"Job {job_id} not found")
    return JobResponse.from_records(job, active_pipeline.get_media_file(job.file_id))


@app.get(
    "/api/v1/files",
    response_model=List[FileResponse],
    tags=["Transcription"],
    summary="List uploaded files, newest first"
)
async def list_files() -> List[FileResponse]:
    active_pipeline = _require_pipeline()
    return [
        FileResponse.from_records(media_file, active_pipeline.store.get_job_for_file(media_file.file_id))
        for media_file in active_pipeline.list_media_files()
    ]


@app.get(
    "/api/v1/segments/{file_id}",
    response_model=SegmentsResponse,
    tags=["Transcription"],
    summary="Get the transcript segments of a file",
    responses={404: {"model": ErrorResponse}}
)
async def get_segments(file_id: str) -> SegmentsResponse:
    """
    Return the file's segments sorted by start time.

    Segments of a job still PROCESSING are returned as they arrive; chunks
    finish in any order, so gaps may exist until the job completes.
    """
    active_pipeline = _require_pipeline()
    media_file = active_pipeline.get_media_file(file_id)
    if media_file is None:
        raise _error(status.HTTP_404_NOT_FOUND, "FILE_NOT_FOUND", f"File {file_id} not found")

    # Status and duration come from the file's job
    job = active_pipeline.store.get_job_for_file(file_id)
    return SegmentsResponse(
        file_id=file_id,
        status=job.status.value if job else None,
        language=media_file.language,
        transcription_duration=job.transcription_duration if job else None,
        segments=[SegmentResponse.from_segment(s) for s in active_pipeline.get_segments(file_id)]
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
