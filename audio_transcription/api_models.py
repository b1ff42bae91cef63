"""
API request and response models for the audio transcription service.

This module defines Pydantic models for response serialization, ensuring
consistent data structures across all endpoints.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from audio_transcription.models import Job, MediaFile, Segment


class TranscribeResponse(BaseModel):
    """
    Response model for an accepted upload.

    Attributes:
        job_id: Identifier of the job tracking the transcription
        file_id: Identifier of the stored media file
        file_path: Storage path of the raw upload
        status: Initial job status (always "PENDING")
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "file_id": "9b2f8c4e-1f0a-4c1e-8a53-2f4d8f7e6b11",
                "file_path": "uploads/9b2f8c4e-1f0a-4c1e-8a53-2f4d8f7e6b11.mp4",
                "status": "PENDING"
            }
        }
    )

    job_id: str = Field(..., description="Unique job identifier")
    file_id: str = Field(..., description="Unique media file identifier")
    file_path: str = Field(..., description="Storage path of the upload")
    status: str = Field(..., description="Current job status")


class FileResponse(BaseModel):
    """Uploaded media file together with the status of its job."""
    model_config = ConfigDict(protected_namespaces=())

    id: str = Field(..., description="Media file identifier")
    file_name: str = Field(..., description="Original file name")
    file_path: str = Field(..., description="Storage path of the upload")
    mime_type: Optional[str] = Field(None, description="Detected MIME type")
    duration: Optional[float] = Field(None, description="Duration in seconds (once probed)")
    language: Optional[str] = Field(None, description="Detected language")
    model: str = Field(..., description="Transcription backend")
    status: Optional[str] = Field(None, description="Status of the file's job")
    transcription_duration: Optional[float] = Field(
        None, description="Seconds spent transcribing (once finished)"
    )
    created_at: str = Field(..., description="Upload timestamp (ISO 8601)")

    @classmethod
    def from_records(cls, media_file: MediaFile, job: Optional[Job]) -> "FileResponse":
        return cls(
            id=media_file.file_id,
            file_name=media_file.original_filename,
            file_path=media_file.file_path,
            mime_type=media_file.mime_type,
            duration=media_file.duration,
            language=media_file.language,
            model=media_file.model,
            status=job.status.value if job else None,
            transcription_duration=job.transcription_duration if job else None,
            created_at=media_file.created_at.isoformat(),
        )


class JobResponse(BaseModel):
    """
    Response model for a job status query.

    Attributes:
        id: Job identifier
        file_id: Identifier of the media file being transcribed
        status: PENDING, PROCESSING, COMPLETED or FAILED
        total_chunks: Number of planned chunks (0 until planned)
        completed_chunks: Number of chunks transcribed so far
        progress: completed_chunks / total_chunks
        error: Failure description (only when FAILED)
        file: The media file record
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "file_id": "9b2f8c4e-1f0a-4c1e-8a53-2f4d8f7e6b11",
                "status": "PROCESSING",
                "total_chunks": 3,
                "completed_chunks": 1,
                "progress": 0.3333,
                "error": None,
                "file": None
            }
        }
    )

    id: str = Field(..., description="Job identifier")
    file_id: str = Field(..., description="Media file identifier")
    status: str = Field(..., description="Current job status")
    total_chunks: int = Field(..., description="Number of planned chunks")
    completed_chunks: int = Field(..., description="Number of transcribed chunks")
    progress: float = Field(..., description="Fraction of chunks transcribed")
    error: Optional[str] = Field(None, description="Error message (when failed)")
    file: Optional[FileResponse] = Field(None, description="Media file record")

    @classmethod
    def from_records(cls, job: Job, media_file: Optional[MediaFile]) -> "JobResponse":
        return cls(
            id=job.job_id,
            file_id=job.file_id,
            status=job.status.value,
            total_chunks=job.total_chunks,
            completed_chunks=job.completed_chunks,
            progress=job.progress,
            error=job.error_message,
            file=FileResponse.from_records(media_file, job) if media_file else None,
        )


class SegmentResponse(BaseModel):
    """A transcript segment on the original timeline."""
    id: str = Field(..., description="Segment identifier")
    start: float = Field(..., description="Start time in seconds")
    end: float = Field(..., description="End time in seconds")
    text: str = Field(..., description="Transcribed text")

    @classmethod
    def from_segment(cls, segment: Segment) -> "SegmentResponse":
        return cls(id=segment.segment_id, start=segment.start, end=segment.end, text=segment.text)


class SegmentsResponse(BaseModel):
    """Transcript of a media file, ordered by start time."""
    file_id: str = Field(..., description="Media file identifier")
    status: Optional[str] = Field(None, description="Status of the file's job")
    language: Optional[str] = Field(None, description="Detected language")
    transcription_duration: Optional[float] = Field(None, description="Seconds spent transcribing")
    segments: List[SegmentResponse] = Field(default_factory=list, description="Segments by start time")


class HealthResponse(BaseModel):
    """
    Response model for health check endpoint.

    Attributes:
        status: Overall service health status
        default_model: Backend used when an upload names none
        supported_models: Every backend an upload may request
    """
    model_config = ConfigDict(protected_namespaces=())

    status: str = Field(..., description="Service health status")
    default_model: str = Field(..., description="Default transcription backend")
    supported_models: List[str] = Field(..., description="Accepted transcription backends")


class ErrorResponse(BaseModel):
    """
    Standard error response model.

    All API errors return this consistent structure.
    """

    class ErrorDetail(BaseModel):
        """Error detail structure."""
        code: str = Field(..., description="Error code")
        message: str = Field(..., description="Human-readable error message")
        details: Optional[str] = Field(None, description="Additional error context")

    error: ErrorDetail = Field(..., description="Error information")
