"""
Chunk planning for long recordings.

Normalized audio longer than the configured chunk duration is split into
fixed-length slices so each one can be transcribed independently. Every
planned chunk remembers its offset on the original timeline, which is later
added back to the chunk-relative timestamps the backends report.
"""

import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from audio_transcription.audio_processor import AudioProcessor
from audio_transcription.logging_config import get_logger


@dataclass(frozen=True)
class PlannedChunk:
    """
    One slice of the normalized audio.

    Attributes:
        index: 0-based position of the chunk
        offset: Start of the chunk on the original timeline (seconds)
        duration: Requested chunk length (seconds); the last chunk may be shorter
    """
    index: int
    offset: float
    duration: float


@dataclass(frozen=True)
class ChunkPlan:
    """Chunks planned for one normalized audio file."""
    duration: float
    chunks: List[PlannedChunk]

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @property
    def is_single(self) -> bool:
        """Whether the normalized file is transcribed as-is, without splitting."""
        return len(self.chunks) == 1


def plan_chunks(duration: float, chunk_duration: float) -> ChunkPlan:
    """
    Compute chunk boundaries for audio of the given duration.

    Audio no longer than ``chunk_duration`` yields a single chunk at offset
    0. Longer audio yields ``ceil(duration / chunk_duration)`` chunks at
    offsets ``0, chunk_duration, 2 * chunk_duration, ...``.

    Args:
        duration: Total audio duration in seconds
        chunk_duration: Maximum chunk length in seconds

    Returns:
        ChunkPlan describing every chunk

    Raises:
        ValueError: If either duration is not positive

    Example:
        >>> [c.offset for c in plan_chunks(700, 300).chunks]
        [0, 300, 600]
    """
    if chunk_duration <= 0:
        raise ValueError(f"chunk_duration must be positive, got {chunk_duration}")
    if duration <= 0:
        raise ValueError(f"duration must be positive, got {duration}")

    # Short audio is sent as-is
    if duration <= chunk_duration:
        return ChunkPlan(duration=duration, chunks=[PlannedChunk(0, 0, duration)])

    # Last chunk may run past the end; FFmpeg clamps it
    num_chunks = math.ceil(duration / chunk_duration)
    chunks = [
        PlannedChunk(index=i, offset=i * chunk_duration, duration=chunk_duration)
        for i in range(num_chunks)
    ]
    return ChunkPlan(duration=duration, chunks=chunks)


def chunk_file_name(file_id: str, index: int) -> str:
    """Name of the audio artifact holding chunk ``index`` of a file."""
    return f"{file_id}_chunk_{index:03d}.wav"


class ChunkPlanner:
    """
    Plans and materializes chunks of normalized audio.

    Duration probing and slice encoding are delegated to the AudioProcessor;
    slices are encoded one at a time since they all read the same source.
    """

    def __init__(
        self,
        audio_processor: AudioProcessor,
        chunk_dir: Union[str, Path],
        chunk_duration: float = 300.0
    ):
        self.audio_processor = audio_processor
        self.chunk_dir = Path(chunk_dir)
        self.chunk_duration = chunk_duration
        self.logger = get_logger(__name__)

    def plan(self, processed_path: Union[str, Path], chunk_duration: Optional[float] = None) -> ChunkPlan:
        """
        Probe the normalized audio and plan its chunks.

        Raises:
            ProbeError: If the duration cannot be determined
        """
        duration = self.audio_processor.probe_duration(processed_path)
        # Task payload may carry its own chunk duration
        plan = plan_chunks(duration, chunk_duration or self.chunk_duration)
        self.logger.debug(
            f"Planned {plan.total_chunks} chunk(s) for {processed_path} ({duration:.2f}s)"
        )
        return plan

    def materialize(
        self,
        processed_path: Union[str, Path],
        file_id: str,
        chunk: PlannedChunk
    ) -> Path:
        """
        Encode one planned chunk into its own audio file.

        Args:
            processed_path: Path of the normalized audio
            file_id: Identifier of the media file (used in the chunk file name)
            chunk: The chunk to encode

        Returns:
            Path of the chunk audio file

        Raises:
            EncodeError: If the slice cannot be encoded
        """
        # <file_id>_chunk_<iii>.wav next to the normalized audio
        output_path = self.chunk_dir / chunk_file_name(file_id, chunk.index)
        return self.audio_processor.encode(
            processed_path,
            output_path,
            start=chunk.offset,
            duration=chunk.duration,
        )
