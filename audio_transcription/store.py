"""
Record store for media files, transcription jobs and segments.

This module provides the TranscriptStore class, the pipeline's persistence
boundary. Besides plain create/read/update it offers the two concurrency
primitives the pipeline relies on: an atomic, per-index chunk-completion
counter and a first-writer-wins language field.
"""

from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional, Set

from audio_transcription.models import Job, JobStatus, MediaFile, Segment
from audio_transcription.logging_config import get_logger, log_with_context


class InvalidStateTransitionError(Exception):
    """Exception raised when a job update would violate its lifecycle."""
    pass


class TranscriptStore:
    """
    Thread-safe, in-memory store for transcription records.

    Every mutation happens under a single lock, so read-modify-write
    operations such as ``increment_completed_chunks`` are serialized even
    when several workers update the same job.

    Attributes:
        _files: Dictionary mapping file_id to MediaFile instances
        _jobs: Dictionary mapping job_id to Job instances
        _segments: Dictionary mapping file_id to its Segment list
        _completed_chunks: Dictionary mapping job_id to its counted chunk indices
        _lock: Lock guarding every dictionary
    """

    MEDIA_FILE_FIELDS = frozenset({
        "mime_type", "processed_file_path", "chunk_paths", "duration", "language"
    })

    def __init__(self):
        """Initialize the store with no records."""
        self._files: Dict[str, MediaFile] = {}
        self._jobs: Dict[str, Job] = {}
        self._segments: Dict[str, List[Segment]] = {}
        # job_id -> indices of the chunks transcribed so far
        self._completed_chunks: Dict[str, Set[int]] = {}
        self._lock = Lock()
        self.logger = get_logger(__name__)

    # Media files

    def create_media_file(
        self,
        original_filename: str,
        file_path: str,
        model: str,
        mime_type: Optional[str] = None
    ) -> MediaFile:
        """
        Record a newly uploaded file.

        Args:
            original_filename: Name of the file as uploaded
            file_path: Storage path of the raw upload
            model: Requested transcription backend identifier
            mime_type: Detected MIME type, if known

        Returns:
            The created MediaFile
        """
        media_file = MediaFile(
            original_filename=original_filename,
            file_path=file_path,
            model=model,
            mime_type=mime_type
        )

        with self._lock:
            self._files[media_file.file_id] = media_file
            self._segments[media_file.file_id] = []

        log_with_context(
            self.logger,
            "info",
            "Media file created",
            file_id=media_file.file_id,
            file_path=file_path,
            model=model
        )
        return media_file

    def get_media_file(self, file_id: str) -> Optional[MediaFile]:
        with self._lock:
            return self._files.get(file_id)

    def list_media_files(self) -> List[MediaFile]:
        """Return all media files, newest first."""
        with self._lock:
            files = list(self._files.values())
        return sorted(files, key=lambda f: f.created_at, reverse=True)

    def update_media_file(self, file_id: str, **fields) -> MediaFile:
        """
        Set fields on a media file.

        Raises:
            KeyError: If the file does not exist
            ValueError: If a field is unknown or not updatable
        """
        unknown = set(fields) - self.MEDIA_FILE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update media file fields: {sorted(unknown)}")

        with self._lock:
            media_file = self._require_file(file_id)
            for name, value in fields.items():
                setattr(media_file, name, list(value) if name == "chunk_paths" else value)
            return media_file

    def set_language_if_unset(self, file_id: str, language: str) -> str:
        """
        Record the detected language unless one is already set.

        Calling this again, with the same or a different language, leaves
        the first value in place.

        Returns:
            The language stored on the file after the call

        Raises:
            KeyError: If the file does not exist
        """
        with self._lock:
            media_file = self._require_file(file_id)
            if media_file.language is None:
                media_file.language = language
            return media_file.language

    # Jobs

    def create_job(self, file_id: str) -> Job:
        """
        Create the PENDING job for a media file.

        Raises:
            KeyError: If the file does not exist
        """
        job = Job(file_id=file_id)

        with self._lock:
            self._require_file(file_id)
            self._jobs[job.job_id] = job

        log_with_context(
            self.logger,
            "info",
            "Job created",
            job_id=job.job_id,
            file_id=file_id
        )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_job_for_file(self, file_id: str) -> Optional[Job]:
        with self._lock:
            for job in self._jobs.values():
                if job.file_id == file_id:
                    return job
        return None

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None
    ) -> Job:
        """
        Move a job to a new status.

        Entering PROCESSING records ``started_at``; entering a terminal
        status records ``completed_at``. A job cannot leave COMPLETED or
        FAILED, and cannot become COMPLETED before every chunk is counted.

        Args:
            job_id: The job to update
            status: The new status
            error_message: Failure description (for FAILED)

        Returns:
            The updated Job

        Raises:
            KeyError: If the job does not exist
            InvalidStateTransitionError: If the transition is not allowed
        """
        with self._lock:
            job = self._require_job(job_id)
            old_status = job.status

            # Terminal states are final
            if old_status.is_terminal:
                raise InvalidStateTransitionError(
                    f"Job {job_id} is already {old_status.value}; cannot move to {status.value}"
                )
            # Completion needs a plan and every chunk counted
            if status == JobStatus.COMPLETED and (
                job.total_chunks == 0 or job.completed_chunks != job.total_chunks
            ):
                raise InvalidStateTransitionError(
                    f"Job {job_id} has {job.completed_chunks}/{job.total_chunks} chunks "
                    "completed; cannot mark it COMPLETED"
                )

            job.status = status
            now = datetime.utcnow()

            # Keep the first start time
            if status == JobStatus.PROCESSING and job.started_at is None:
                job.started_at = now

            if error_message is not None:
                job.error_message = error_message

            if status.is_terminal:
                job.completed_at = now

        log_context = {
            "old_status": old_status.value,
            "new_status": status.value
        }
        if error_message:
            log_context["failure_reason"] = error_message

        log_with_context(
            self.logger,
            "info",
            "Job status updated",
            job_id=job_id,
            **log_context
        )
        return job

    def start_chunking(self, job_id: str, total_chunks: int) -> Job:
        """
        Record the number of planned chunks.

        Chunks already counted for the job are kept as long as the plan
        has the same size, so a repeated delivery of the transcription
        stage (even one overlapping the first) continues the same count.
        A plan of a different size starts counting from zero.

        Raises:
            KeyError: If the job does not exist
            InvalidStateTransitionError: If the job is already terminal
            ValueError: If total_chunks is not positive
        """
        if total_chunks < 1:
            raise ValueError(f"total_chunks must be positive, got {total_chunks}")

        with self._lock:
            job = self._require_job(job_id)
            if job.status.is_terminal:
                raise InvalidStateTransitionError(
                    f"Job {job_id} is already {job.status.value}"
                )
            # A different plan invalidates chunks counted so far
            if job.total_chunks != total_chunks:
                job.total_chunks = total_chunks
                self._completed_chunks[job_id] = set()
            else:
                self._completed_chunks.setdefault(job_id, set())
            job.completed_chunks = len(self._completed_chunks[job_id])
            return job

    def increment_completed_chunks(self, job_id: str, chunk_index: int) -> int:
        """
        Atomically count a chunk as transcribed.

        Counting is by chunk index: a chunk reported twice is counted once,
        and the second report is a no-op rather than an error.

        Returns:
            The number of distinct chunks counted after the call

        Raises:
            KeyError: If the job does not exist
            ValueError: If chunk_index is outside the planned chunks
        """
        with self._lock:
            job = self._require_job(job_id)
            if not 0 <= chunk_index < job.total_chunks:
                raise ValueError(
                    f"Chunk {chunk_index} is outside the {job.total_chunks} planned chunks of job {job_id}"
                )
            counted = self._completed_chunks.setdefault(job_id, set())
            # No-op for a chunk that is already counted
            counted.add(chunk_index)
            job.completed_chunks = len(counted)
            return job.completed_chunks

    def get_completed_chunk_indices(self, job_id: str) -> Set[int]:
        """Return the indices of the chunks counted for a job."""
        with self._lock:
            return set(self._completed_chunks.get(job_id, ()))

    def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        """
        Remove finished jobs older than the given age, with their files and segments.

        Only COMPLETED or FAILED jobs are eligible; stored audio is not
        touched.

        Returns:
            The number of jobs that were removed
        """
        cutoff_time = datetime.utcnow() - timedelta(hours=max_age_hours)

        with self._lock:
            expired = [
                job for job in self._jobs.values()
                if job.status.is_terminal
                and job.completed_at
                and job.completed_at < cutoff_time
            ]
            # Stored audio is left on disk
            for job in expired:
                del self._jobs[job.job_id]
                self._completed_chunks.pop(job.job_id, None)
                self._files.pop(job.file_id, None)
                self._segments.pop(job.file_id, None)

        if expired:
            log_with_context(
                self.logger,
                "info",
                "Cleaned up old jobs",
                removed_count=len(expired),
                max_age_hours=max_age_hours
            )

        return len(expired)

    # Segments

    def replace_chunk_segments(
        self,
        file_id: str,
        chunk_index: int,
        segments: Iterable[dict]
    ) -> List[Segment]:
        """
        Store the segments produced by one chunk.

        Segments previously stored for the same chunk are dropped first, so
        transcribing a chunk twice never duplicates its text.

        Args:
            file_id: The media file the segments belong to
            chunk_index: Index of the chunk that produced them
            segments: Dicts with ``start``, ``end`` (original timeline) and ``text``

        Returns:
            The stored Segment instances

        Raises:
            KeyError: If the file does not exist
        """
        new_segments = [
            Segment(
                file_id=file_id,
                chunk_index=chunk_index,
                start=seg["start"],
                end=seg["end"],
                text=seg["text"]
            )
            for seg in segments
        ]

        with self._lock:
            self._require_file(file_id)
            # Drop this chunk's earlier results before storing the new ones
            kept = [s for s in self._segments[file_id] if s.chunk_index != chunk_index]
            self._segments[file_id] = kept + new_segments

        return new_segments

    def get_segments(self, file_id: str) -> List[Segment]:
        """Return a file's segments ordered by start time."""
        with self._lock:
            segments = list(self._segments.get(file_id, []))
        # Chunks finish in any order
        return sorted(segments, key=lambda s: (s.start, s.end))

    def _require_file(self, file_id: str) -> MediaFile:
        if file_id not in self._files:
            raise KeyError(f"Media file with id {file_id} not found")
        return self._files[file_id]

    def _require_job(self, job_id: str) -> Job:
        if job_id not in self._jobs:
            raise KeyError(f"Job with id {job_id} not found")
        return self._jobs[job_id]
