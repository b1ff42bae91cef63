"""
Transcription pipeline orchestration.

This module provides the TranscriptionPipeline class which drives a job
through its stages:

1. **Preprocess**: normalize the raw upload to canonical audio
2. **Chunk & transcribe**: plan chunks, encode them one by one and
   transcribe them concurrently on a dedicated chunk pool
3. **Finalize**: once every chunk has settled, complete the job (and remove
   the normalized audio) or fail it

Stages run as tasks on a TaskQueue and communicate only through the
TranscriptStore, which is also where the HTTP layer reads progress from.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from audio_transcription.audio_processor import AudioProcessor
from audio_transcription.backends import (
    TranscriptionBackend,
    create_backend,
    validate_model,
)
from audio_transcription.chunk_planner import ChunkPlanner, PlannedChunk
from audio_transcription.config import Settings, TranscriptionModel, settings as default_settings
from audio_transcription.logging_config import get_logger, log_with_context
from audio_transcription.models import Job, JobStatus, MediaFile, Segment
from audio_transcription.store import InvalidStateTransitionError, TranscriptStore
from audio_transcription.task_queue import QueueFullError, TaskContext, TaskQueue

PREPROCESS_TASK = "preprocess"
TRANSCRIPTION_TASK = "transcription"


class TranscriptionPipeline:
    """
    Orchestrates preprocessing, chunked transcription and finalization.

    Collaborators are injected so tests can replace any of them; anything
    not given is built from settings. The HTTP client is created here when
    not supplied and shared by every backend.

    Attributes:
        store: TranscriptStore holding files, jobs and segments
        audio_processor: AudioProcessor used for normalization and slicing
        chunk_planner: ChunkPlanner deciding chunk boundaries
        task_queue: TaskQueue running the stage tasks
        chunk_executor: Thread pool running chunk transcriptions
    """

    def __init__(
        self,
        store: Optional[TranscriptStore] = None,
        audio_processor: Optional[AudioProcessor] = None,
        task_queue: Optional[TaskQueue] = None,
        http_client: Optional[httpx.Client] = None,
        backends: Optional[Dict[TranscriptionModel, TranscriptionBackend]] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or default_settings
        self.store = store or TranscriptStore()
        self.audio_processor = audio_processor or AudioProcessor(
            sample_rate=self.settings.target_sample_rate,
            channels=self.settings.target_channels
        )
        self.upload_dir = Path(self.settings.upload_dir)
        self.chunk_planner = ChunkPlanner(
            self.audio_processor,
            chunk_dir=self.upload_dir,
            chunk_duration=self.settings.chunk_duration_seconds
        )
        self.task_queue = task_queue or TaskQueue(
            max_workers=self.settings.max_concurrent_workers,
            max_queue_size=self.settings.max_queue_size
        )
        # Separate from the stage workers, which block waiting on their chunks
        self.chunk_executor = ThreadPoolExecutor(
            max_workers=self.settings.max_chunk_workers,
            thread_name_prefix="chunk-worker"
        )
        self.logger = get_logger(__name__)

        # One client (and connection pool) for every backend
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.Client(timeout=self.settings.http_timeout_seconds)

        self._backends: Dict[TranscriptionModel, TranscriptionBackend] = dict(backends or {})
        self._backends_lock = threading.Lock()

        self.task_queue.register(PREPROCESS_TASK, self.handle_preprocess)
        self.task_queue.register(TRANSCRIPTION_TASK, self.handle_transcription)

    # Ingestion

    def submit(
        self,
        file_path: Union[str, Path],
        original_filename: Optional[str] = None,
        model: Optional[str] = None
    ) -> Job:
        """
        Register an uploaded file and start its transcription.

        The model identifier is checked before anything is recorded, so an
        unknown backend never produces a job.

        Args:
            file_path: Storage path of the raw upload
            original_filename: Name of the file as uploaded (defaults to the path's name)
            model: Backend identifier (defaults to the configured default model)

        Returns:
            The newly created PENDING job

        Raises:
            UnsupportedModelError: If the model identifier is not recognized
            FileNotFoundError: If the upload does not exist
            QueueFullError: If the task queue cannot accept the job
        """
        # Reject unknown models before anything is recorded
        transcription_model = validate_model(model or self.settings.default_model)

        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Uploaded file not found: {file_path}")

        media_file = self.store.create_media_file(
            original_filename=original_filename or file_path.name,
            file_path=str(file_path),
            model=transcription_model.value,
            mime_type=self.audio_processor.detect_mime_type(file_path)
        )
        job = self.store.create_job(media_file.file_id)

        try:
            self.task_queue.enqueue(
                PREPROCESS_TASK,
                {"job_id": job.job_id, "file_id": media_file.file_id}
            )
        except QueueFullError as e:
            # The job exists already; it must not stay PENDING forever
            self._fail(job.job_id, str(e))
            raise

        log_with_context(
            self.logger,
            "info",
            "Transcription job submitted",
            job_id=job.job_id,
            file_id=media_file.file_id,
            model=transcription_model.value
        )
        return job

    # Stage tasks

    def handle_preprocess(self, payload: Dict[str, Any], context: TaskContext) -> None:
        """
        Normalize the raw upload and hand the job over to chunking.

        Raises:
            EncodeError: If the upload cannot be normalized (the job is FAILED)
        """
        job_id = payload["job_id"]
        file_id = payload["file_id"]

        if not self._accepts_work(job_id, PREPROCESS_TASK):
            return

        try:
            media_file = self._require_media_file(file_id)
            output_path = self.upload_dir / f"{file_id}.wav"

            log_with_context(
                context.logger,
                "info",
                "Starting preprocessing",
                job_id=job_id,
                file_path=media_file.file_path
            )
            self.audio_processor.normalize(media_file.file_path, output_path)

            self.store.update_media_file(file_id, processed_file_path=str(output_path))
            # PROCESSING only once the upload decoded
            self.store.update_job_status(job_id, JobStatus.PROCESSING)

            # Hand off to the transcription stage
            context.enqueue(TRANSCRIPTION_TASK, {
                "job_id": job_id,
                "file_id": file_id,
                "model": media_file.model,
                "chunk_duration": self.settings.chunk_duration_seconds,
            })
            log_with_context(
                context.logger,
                "info",
                "Preprocessing complete",
                job_id=job_id,
                file_path=str(output_path)
            )

        except Exception as e:
            log_with_context(
                context.logger,
                "error",
                "Preprocessing failed",
                job_id=job_id,
                error=e
            )
            self._fail(job_id, f"Preprocessing failed: {e}")
            raise

    def handle_transcription(self, payload: Dict[str, Any], context: TaskContext) -> None:
        """
        Plan chunks, transcribe them and finalize the job.

        Raises:
            ProbeError: If the normalized audio cannot be probed
            EncodeError: If a chunk cannot be encoded
            TranscriptionBackendError: If any chunk fails to transcribe
        """
        job_id = payload["job_id"]
        file_id = payload["file_id"]

        if not self._accepts_work(job_id, TRANSCRIPTION_TASK):
            return

        try:
            self._chunk_and_transcribe(
                job_id,
                file_id,
                model=payload.get("model"),
                chunk_duration=payload.get("chunk_duration"),
                logger=context.logger
            )
        except Exception as e:
            log_with_context(
                context.logger,
                "error",
                "Transcription failed",
                job_id=job_id,
                error=e
            )
            self._fail(job_id, f"Transcription failed: {e}")
            raise

    def _chunk_and_transcribe(
        self,
        job_id: str,
        file_id: str,
        model: Optional[str],
        chunk_duration: Optional[float],
        logger
    ) -> None:
        media_file = self._require_media_file(file_id)
        processed_path = media_file.processed_file_path
        if not processed_path:
            raise RuntimeError(f"Media file {file_id} has not been preprocessed")

        # Resolve the backend before any chunk is encoded
        backend = self.get_backend(model or media_file.model)

        plan = self.chunk_planner.plan(processed_path, chunk_duration)
        total = plan.total_chunks
        log_with_context(
            logger,
            "info",
            "Chunks planned",
            job_id=job_id,
            total_chunks=total,
            duration=plan.duration
        )

        self.store.update_media_file(file_id, duration=plan.duration)
        # Same total keeps chunks counted by an earlier delivery
        self.store.start_chunking(job_id, total)

        if plan.is_single:
            # The normalized file is short enough to be sent as-is
            self.store.update_media_file(file_id, chunk_paths=[processed_path])
            self._transcribe_chunk(
                job_id, file_id, backend, plan.chunks[0], processed_path, total, processed_path
            )
            self._finalize(job_id, processed_path, total, failures={})
            return

        futures: Dict[int, Future] = {}
        chunk_paths: List[str] = []
        encode_error: Optional[Exception] = None

        # Slices are encoded one by one; each is dispatched as soon as it exists
        for chunk in plan.chunks:
            try:
                chunk_path = self.chunk_planner.materialize(processed_path, file_id, chunk)
            except Exception as e:
                log_with_context(
                    logger,
                    "error",
                    "Chunk encoding failed",
                    job_id=job_id,
                    chunk_index=chunk.index,
                    total_chunks=total,
                    error=e
                )
                encode_error = e
                # Later slices are not encoded
                break

            chunk_paths.append(str(chunk_path))
            log_with_context(
                logger,
                "info",
                "Chunk split, sending to transcription",
                job_id=job_id,
                chunk_index=chunk.index,
                total_chunks=total
            )
            futures[chunk.index] = self.chunk_executor.submit(
                self._transcribe_chunk,
                job_id, file_id, backend, chunk, str(chunk_path), total, processed_path
            )

        self.store.update_media_file(file_id, chunk_paths=chunk_paths)

        # Every dispatched chunk settles before the job is judged
        wait(futures.values())
        failures = {
            index: future.exception()
            for index, future in futures.items()
            if future.exception() is not None
        }

        if encode_error is not None:
            raise encode_error

        self._finalize(job_id, processed_path, total, failures)

    def _transcribe_chunk(
        self,
        job_id: str,
        file_id: str,
        backend: TranscriptionBackend,
        chunk: PlannedChunk,
        chunk_path: str,
        total_chunks: int,
        processed_path: str
    ) -> int:
        """
        Transcribe one chunk and record its results (internal method).

        Segments are shifted by the chunk offset onto the original timeline
        before they are stored. Any failure is logged with the chunk's
        position before it propagates.

        Returns:
            The number of distinct chunks counted for the job after this one

        Raises:
            TranscriptionBackendError: If the backend call fails
        """
        log_with_context(
            self.logger,
            "info",
            "Starting chunk transcription",
            job_id=job_id,
            chunk_index=chunk.index,
            total_chunks=total_chunks,
            provider=backend.provider
        )

        try:
            result = backend.transcribe(chunk_path)

            # Chunk-relative times onto the original timeline
            shifted = [
                {
                    "start": segment["start"] + chunk.offset,
                    "end": segment["end"] + chunk.offset,
                    "text": segment["text"],
                }
                for segment in result.segments
            ]
            self.store.replace_chunk_segments(file_id, chunk.index, shifted)

            # First chunk to report a language wins
            if result.language:
                self.store.set_language_if_unset(file_id, result.language)

            # Counting by index makes a repeated chunk a no-op
            completed = self.store.increment_completed_chunks(job_id, chunk.index)

            # The normalized file doubles as the only chunk; it is removed on completion
            if Path(chunk_path) != Path(processed_path):
                Path(chunk_path).unlink(missing_ok=True)
                self.logger.debug(f"Deleted chunk file: {chunk_path}")

        except Exception as e:
            log_with_context(
                self.logger,
                "error",
                "Chunk transcription failed",
                job_id=job_id,
                chunk_index=chunk.index,
                total_chunks=total_chunks,
                provider=backend.provider,
                error=e
            )
            raise

        log_with_context(
            self.logger,
            "info",
            "Chunk transcribed",
            job_id=job_id,
            chunk_index=chunk.index,
            total_chunks=total_chunks,
            segment_count=len(shifted),
            completed_chunks=completed
        )
        return completed

    def _finalize(
        self,
        job_id: str,
        processed_path: str,
        total_chunks: int,
        failures: Dict[int, BaseException]
    ) -> None:
        """
        Complete or fail the job once every chunk has settled (internal method).

        A chunk that failed here but was counted by another delivery of the
        same stage is not a failure. Losing the race to complete the job
        against such a delivery is not an error either.
        """
        job = self.store.get_job(job_id)
        if job.status.is_terminal:
            log_with_context(
                self.logger,
                "info",
                "Job already finished by another delivery",
                job_id=job_id,
                status=job.status.value
            )
            return

        counted = self.store.get_completed_chunk_indices(job_id)
        # A chunk counted by any delivery is done, whatever happened here
        failed = {index: error for index, error in failures.items() if index not in counted}

        if failed:
            self._fail(job_id, f"{len(failed)}/{total_chunks} chunks failed to transcribe")
            # Surface the first failed chunk's error
            raise failed[min(failed)]

        if len(counted) != total_chunks:
            raise RuntimeError(
                f"Only {len(counted)}/{total_chunks} chunks were counted as completed"
            )

        try:
            self.store.update_job_status(job_id, JobStatus.COMPLETED)
        except InvalidStateTransitionError as e:
            # Another delivery finished the job between the check above and here
            log_with_context(
                self.logger,
                "info",
                "Job already finished by another delivery",
                job_id=job_id,
                reason=str(e)
            )
            return

        # Raw upload is kept
        Path(processed_path).unlink(missing_ok=True)

        log_with_context(
            self.logger,
            "info",
            "Job fully transcribed",
            job_id=job_id,
            total_chunks=total_chunks,
            transcription_duration=job.transcription_duration
        )

    # Helpers

    def get_backend(self, model: Union[str, TranscriptionModel]) -> TranscriptionBackend:
        """
        Return the (cached) backend for a model identifier.

        Raises:
            UnsupportedModelError: If the identifier is not recognized
        """
        transcription_model = validate_model(model)
        with self._backends_lock:
            if transcription_model not in self._backends:
                self._backends[transcription_model] = create_backend(
                    transcription_model, self.settings, self.http_client
                )
            return self._backends[transcription_model]

    def _accepts_work(self, job_id: str, stage: str) -> bool:
        job = self.store.get_job(job_id)
        if job is None:
            log_with_context(self.logger, "error", "Job not found", job_id=job_id, stage=stage)
            return False
        if job.status.is_terminal:
            log_with_context(
                self.logger,
                "warning",
                "Ignoring stage for finished job",
                job_id=job_id,
                stage=stage,
                status=job.status.value
            )
            return False
        return True

    def _require_media_file(self, file_id: str) -> MediaFile:
        media_file = self.store.get_media_file(file_id)
        if media_file is None:
            raise KeyError(f"Media file with id {file_id} not found")
        return media_file

    def _fail(self, job_id: str, message: str) -> None:
        """Mark a job FAILED unless it already reached a terminal state."""
        try:
            self.store.update_job_status(job_id, JobStatus.FAILED, error_message=message)
        except InvalidStateTransitionError as e:
            log_with_context(
                self.logger,
                "debug",
                "Job already finished, keeping its status",
                job_id=job_id,
                reason=str(e)
            )

    # Read side

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get_job(job_id)

    def get_media_file(self, file_id: str) -> Optional[MediaFile]:
        return self.store.get_media_file(file_id)

    def list_media_files(self) -> List[MediaFile]:
        return self.store.list_media_files()

    def get_segments(self, file_id: str) -> List[Segment]:
        """Return a file's transcript segments ordered by start time."""
        return self.store.get_segments(file_id)

    def cleanup_old_jobs(self, max_age_hours: Optional[int] = None) -> int:
        return self.store.cleanup_old_jobs(
            max_age_hours or self.settings.job_cleanup_max_age_hours
        )

    def shutdown(self) -> None:
        """
        Shut down the pipeline.

        Waits for running stage tasks and chunk transcriptions, then closes
        the HTTP client if the pipeline created it.
        """
        self.logger.info("Shutting down TranscriptionPipeline")
        self.task_queue.shutdown(wait_for_tasks=True)
        self.chunk_executor.shutdown(wait=True)
        if self._owns_http_client:
            self.http_client.close()
        self.logger.info("TranscriptionPipeline shutdown complete")
