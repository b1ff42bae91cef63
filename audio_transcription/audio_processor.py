"""
Media processing module for the audio transcription pipeline.

This module wraps FFmpeg for everything the pipeline needs from the
media-decoding engine: detecting what was uploaded, probing durations, and
encoding (whole files or time slices) into the canonical audio format the
transcription backends expect.
"""

import logging
import mimetypes
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import ffmpeg


class MediaFormat(Enum):
    """Media containers recognized from their file signatures."""
    WAV = "audio/wav"
    MP3 = "audio/mpeg"
    OGG = "audio/ogg"
    FLAC = "audio/flac"
    M4A = "audio/mp4"
    MP4 = "video/mp4"
    WEBM = "video/webm"


# Mapping of file extensions to MediaFormat
EXTENSION_TO_FORMAT = {
    ".wav": MediaFormat.WAV,
    ".mp3": MediaFormat.MP3,
    ".ogg": MediaFormat.OGG,
    ".oga": MediaFormat.OGG,
    ".flac": MediaFormat.FLAC,
    ".m4a": MediaFormat.M4A,
    ".mp4": MediaFormat.MP4,
    ".mov": MediaFormat.MP4,
    ".webm": MediaFormat.WEBM,
}


class ProbeError(Exception):
    """Exception raised when the duration of a media file cannot be determined."""
    pass


class EncodeError(Exception):
    """Exception raised when normalizing or slicing audio fails."""
    pass


class AudioProcessor:
    """
    Handles media detection, duration probing and audio encoding.

    All encoding produces 16-bit PCM at a fixed sample rate and channel
    count, which is what every transcription backend is fed.
    """

    DEFAULT_SAMPLE_RATE = 16000  # 16kHz
    DEFAULT_CHANNELS = 1  # Mono

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS
    ):
        """
        Initialize the AudioProcessor.

        Args:
            sample_rate: Sample rate of encoded output (Hz)
            channels: Channel count of encoded output
        """
        # Initialize mimetypes for the extension fallback
        mimetypes.init()
        self.sample_rate = sample_rate
        self.channels = channels
        self.logger = logging.getLogger(__name__)

    def detect_format(self, file_path: Union[str, Path]) -> Optional[MediaFormat]:
        """
        Detect the media format using file headers and extensions.

        The file signature wins when it is recognized; the extension is
        used as a fallback for containers with unusual headers.

        Args:
            file_path: Path to the media file

        Returns:
            MediaFormat if detected, None otherwise
        """
        file_path = Path(file_path)

        if not file_path.exists():
            return None

        # Step 1: trust the file signature when it is recognized
        format_from_magic = self._detect_format_from_magic_bytes(file_path)
        if format_from_magic is not None:
            # ftyp boxes are shared by audio-only M4A and video MP4
            if format_from_magic == MediaFormat.MP4 and file_path.suffix.lower() == ".m4a":
                return MediaFormat.M4A
            return format_from_magic

        # Step 2: fall back to the extension
        return EXTENSION_TO_FORMAT.get(file_path.suffix.lower())

    def _detect_format_from_magic_bytes(self, file_path: Path) -> Optional[MediaFormat]:
        """
        Detect media format by reading file signature (magic bytes).

        Args:
            file_path: Path to the media file

        Returns:
            MediaFormat if detected, None otherwise
        """
        try:
            with open(file_path, "rb") as f:
                # First 12 bytes cover every signature below
                header = f.read(12)
        except OSError:
            return None

        if not header:
            return None

        # WAV (RIFF header)
        if header.startswith(b"RIFF") and b"WAVE" in header:
            return MediaFormat.WAV

        # MP3 (ID3 tag or MPEG frame sync)
        if header.startswith(b"ID3") or header[0:2] in (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2"):
            return MediaFormat.MP3

        if header.startswith(b"OggS"):
            return MediaFormat.OGG

        if header.startswith(b"fLaC"):
            return MediaFormat.FLAC

        # Matroska/WebM (EBML header)
        if header.startswith(b"\x1a\x45\xdf\xa3"):
            return MediaFormat.WEBM

        # ISO base media (MP4/M4A/MOV) carry an 'ftyp' box at offset 4
        if len(header) >= 8 and header[4:8] == b"ftyp":
            if header[8:11] == b"M4A":
                return MediaFormat.M4A
            return MediaFormat.MP4

        return None

    def detect_mime_type(self, file_path: Union[str, Path]) -> Optional[str]:
        """
        Detect the MIME type of an uploaded file.

        Args:
            file_path: Path to the media file

        Returns:
            MIME type string, or None if it cannot be determined
        """
        detected = self.detect_format(file_path)
        if detected is not None:
            return detected.value

        # Unknown containers still get whatever the extension suggests
        guessed, _ = mimetypes.guess_type(str(file_path))
        return guessed

    def probe_duration(self, file_path: Union[str, Path]) -> float:
        """
        Determine the duration of a media file with ffprobe.

        Args:
            file_path: Path to the media file

        Returns:
            Duration in seconds

        Raises:
            ProbeError: If the file is missing, unreadable or has no duration
        """
        file_path = Path(file_path)

        # Validate input file exists
        if not file_path.exists():
            raise ProbeError(f"Media file not found: {file_path}")

        try:
            metadata = ffmpeg.probe(str(file_path))
        except ffmpeg.Error as e:
            error_message = e.stderr.decode(errors="replace") if e.stderr else str(e)
            self.logger.error(f"FFprobe error for {file_path}: {error_message}")
            raise ProbeError(f"Failed to probe media file: {error_message}") from e

        # Containers without a duration report "N/A" or nothing at all
        try:
            duration = float(metadata["format"]["duration"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProbeError(f"No duration reported for media file: {file_path}") from e

        if duration <= 0:
            raise ProbeError(f"Media file has non-positive duration {duration}: {file_path}")

        return duration

    def encode(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        start: Optional[float] = None,
        duration: Optional[float] = None,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        audio_format: str = "wav"
    ) -> Path:
        """
        Encode a media file, or a time slice of it, to PCM audio.

        When ``start``/``duration`` are given the input is seeked before
        decoding; a slice running past the end of the stream is clamped by
        FFmpeg to whatever audio remains.

        Args:
            input_path: Path to the source media file
            output_path: Destination path for the encoded audio
            start: Offset in seconds to start reading from (optional)
            duration: Maximum number of seconds to encode (optional)
            sample_rate: Output sample rate (defaults to the processor's)
            channels: Output channel count (defaults to the processor's)
            audio_format: Output container format (default: wav)

        Returns:
            Path to the encoded audio file

        Raises:
            EncodeError: If the input is missing/corrupt or FFmpeg fails
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        # Validate input file exists
        if not input_path.exists():
            raise EncodeError(f"Input media file not found: {input_path}")

        # Seek on the input so only the slice is decoded
        input_options = {}
        if start is not None:
            input_options["ss"] = start
        if duration is not None:
            input_options["t"] = duration

        output_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self.logger.info(f"Encoding audio: {input_path} -> {output_path}")

            # Build FFmpeg pipeline
            stream = ffmpeg.input(str(input_path), **input_options)
            stream = ffmpeg.output(
                stream,
                str(output_path),
                acodec="pcm_s16le",  # PCM 16-bit little-endian
                ac=channels or self.channels,
                ar=sample_rate or self.sample_rate,
                format=audio_format
            )
            # Run the conversion, capturing stderr for error messages
            ffmpeg.run(stream, overwrite_output=True, capture_stdout=True, capture_stderr=True)

        except ffmpeg.Error as e:
            error_message = e.stderr.decode(errors="replace") if e.stderr else str(e)
            self.logger.error(f"FFmpeg encode error: {error_message}")
            # Clean up partial output
            output_path.unlink(missing_ok=True)
            raise EncodeError(f"Failed to encode audio file: {error_message}") from e

        # Verify the output file was created
        if not output_path.exists() or output_path.stat().st_size == 0:
            output_path.unlink(missing_ok=True)
            raise EncodeError("Encoding produced empty or missing output file")

        self.logger.info(f"Audio encoding successful: {output_path}")
        return output_path

    def normalize(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path]
    ) -> Path:
        """
        Convert an uploaded media file to the canonical transcription format.

        Args:
            input_path: Path to the raw upload
            output_path: Destination path of the normalized WAV file

        Returns:
            Path to the normalized audio file

        Raises:
            EncodeError: If the conversion fails
        """
        return self.encode(input_path, output_path)
