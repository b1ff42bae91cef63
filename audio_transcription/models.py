"""
Data models for the audio transcription pipeline.

This module defines the core records the pipeline reads and mutates:
uploaded media files, the transcription job tracking each of them, and the
time-aligned transcript segments produced from its chunks.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4


class JobStatus(Enum):
    """
    Enumeration of possible job processing states.

    Attributes:
        PENDING: Job has been created but preprocessing has not finished
        PROCESSING: Audio is normalized and chunks are being transcribed
        COMPLETED: Every chunk was transcribed and intermediate audio removed
        FAILED: Job encountered an error during processing
    """
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is allowed out of this status."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class MediaFile:
    """
    An uploaded audio or video file and the artifacts derived from it.

    Attributes:
        file_id: Unique identifier for the file
        original_filename: Name of the file as uploaded
        file_path: Storage path of the raw upload
        mime_type: Detected MIME type of the upload (None if unknown)
        model: Transcription backend identifier requested for this file
        processed_file_path: Path of the normalized audio (None until preprocessed)
        chunk_paths: Paths of the chunk files the normalized audio was split into
        duration: Total duration in seconds (None until probed)
        language: Detected language (None until a chunk reports one)
        created_at: Timestamp when the file was uploaded
    """

    def __init__(
        self,
        original_filename: str,
        file_path: str,
        model: str,
        mime_type: Optional[str] = None,
        file_id: Optional[str] = None,
        processed_file_path: Optional[str] = None,
        chunk_paths: Optional[List[str]] = None,
        duration: Optional[float] = None,
        language: Optional[str] = None,
        created_at: Optional[datetime] = None
    ):
        self.file_id = file_id or str(uuid4())
        self.original_filename = original_filename
        self.file_path = file_path
        self.mime_type = mime_type
        self.model = model
        self.processed_file_path = processed_file_path
        self.chunk_paths = list(chunk_paths or [])
        self.duration = duration
        self.language = language
        self.created_at = created_at or datetime.utcnow()

    def to_dict(self) -> dict:
        """
        Convert the MediaFile instance to a dictionary representation.

        Returns:
            Dictionary containing all file attributes with serializable values
        """
        return {
            "file_id": self.file_id,
            "original_filename": self.original_filename,
            "file_path": self.file_path,
            "mime_type": self.mime_type,
            "model": self.model,
            "processed_file_path": self.processed_file_path,
            "chunk_paths": list(self.chunk_paths),
            "duration": self.duration,
            "language": self.language,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"MediaFile(file_id={self.file_id!r}, "
            f"original_filename={self.original_filename!r}, model={self.model!r})"
        )


class Job:
    """
    Represents one transcription attempt for a media file.

    Attributes:
        job_id: Unique identifier for the job
        file_id: Identifier of the MediaFile being transcribed
        status: Current processing state (JobStatus enum)
        total_chunks: Number of chunks planned (0 until planning finishes)
        completed_chunks: Number of chunks transcribed so far
        error_message: Error description if the job failed
        created_at: Timestamp when the job was created
        started_at: Timestamp when preprocessing finished and work began
        completed_at: Timestamp when the job reached a terminal state
    """

    def __init__(
        self,
        file_id: str,
        job_id: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        total_chunks: int = 0,
        completed_chunks: int = 0,
        error_message: Optional[str] = None,
        created_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None
    ):
        self.job_id = job_id or str(uuid4())
        self.file_id = file_id
        self.status = status
        self.total_chunks = total_chunks
        self.completed_chunks = completed_chunks
        self.error_message = error_message
        self.created_at = created_at or datetime.utcnow()
        self.started_at = started_at
        self.completed_at = completed_at

    @property
    def progress(self) -> float:
        """Fraction of chunks transcribed, 0.0 while the chunk count is unknown."""
        if self.total_chunks <= 0:
            return 0.0
        return self.completed_chunks / self.total_chunks

    @property
    def transcription_duration(self) -> Optional[float]:
        """Seconds spent between the start of processing and the terminal state."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """
        Convert the Job instance to a dictionary representation.

        Returns:
            Dictionary containing all job attributes with serializable values
        """
        return {
            "job_id": self.job_id,
            "file_id": self.file_id,
            "status": self.status.value,
            "total_chunks": self.total_chunks,
            "completed_chunks": self.completed_chunks,
            "progress": self.progress,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "transcription_duration": self.transcription_duration,
        }

    def __repr__(self) -> str:
        return (
            f"Job(job_id={self.job_id!r}, status={self.status.value!r}, "
            f"chunks={self.completed_chunks}/{self.total_chunks})"
        )


class Segment:
    """
    A contiguous span of transcript text on the original audio timeline.

    Attributes:
        segment_id: Unique identifier for the segment
        file_id: Identifier of the MediaFile the segment belongs to
        chunk_index: Index of the chunk that produced the segment
        start: Start time in seconds, relative to the unchunked audio
        end: End time in seconds, relative to the unchunked audio
        text: Transcribed text
    """

    def __init__(
        self,
        file_id: str,
        chunk_index: int,
        start: float,
        end: float,
        text: str,
        segment_id: Optional[str] = None
    ):
        self.segment_id = segment_id or str(uuid4())
        self.file_id = file_id
        self.chunk_index = chunk_index
        self.start = start
        self.end = end
        self.text = text

    def to_dict(self) -> dict:
        return {
            "segment_id": self.segment_id,
            "file_id": self.file_id,
            "chunk_index": self.chunk_index,
            "start": self.start,
            "end": self.end,
            "text": self.text,
        }

    def __repr__(self) -> str:
        return f"Segment(start={self.start!r}, end={self.end!r}, text={self.text!r})"
