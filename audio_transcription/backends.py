"""
Speech-to-text backends for chunk transcription.

Every backend takes the path of a local audio chunk and returns the detected
language plus segments timed relative to the chunk's own start. The set of
backends is closed: ``TranscriptionModel`` enumerates them and
``create_backend`` maps each member to its implementation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from audio_transcription.config import Settings, TranscriptionModel
from audio_transcription.segment_assembler import group_words_into_segments


class UnsupportedModelError(ValueError):
    """Exception raised when an upload requests an unknown transcription backend."""
    pass


class TranscriptionBackendError(Exception):
    """
    Exception raised when a provider call for one chunk fails.

    Network failures, non-2xx responses and malformed payloads are all
    reported through this single type.

    Attributes:
        provider: Identifier of the backend that failed
        chunk_path: Path of the chunk being transcribed
    """

    def __init__(self, provider: str, chunk_path: Union[str, Path], message: str):
        self.provider = provider
        self.chunk_path = str(chunk_path)
        super().__init__(f"[{provider}] {message} (chunk: {self.chunk_path})")


@dataclass
class TranscriptionResult:
    """Outcome of transcribing one chunk; times are chunk-relative."""
    language: Optional[str]
    segments: List[Dict[str, Any]] = field(default_factory=list)


def validate_model(identifier: Optional[Union[str, TranscriptionModel]]) -> TranscriptionModel:
    """
    Resolve a requested backend identifier against the allow-list.

    Args:
        identifier: Backend identifier such as ``"whisper-local"``

    Returns:
        The matching TranscriptionModel member

    Raises:
        UnsupportedModelError: If the identifier is not a known backend
    """
    if isinstance(identifier, TranscriptionModel):
        return identifier
    # Only exact identifiers are accepted; no aliases or case folding
    try:
        return TranscriptionModel(identifier)
    except ValueError:
        supported = ", ".join(m.value for m in TranscriptionModel)
        raise UnsupportedModelError(
            f"Unsupported transcription model: {identifier!r}. Supported models: {supported}"
        ) from None


def _normalize_segment(raw: Any) -> Dict[str, Any]:
    start = float(raw["start"])
    end = float(raw["end"])
    text = str(raw.get("text") or "").strip()
    return {"start": start, "end": end, "text": text}


class TranscriptionBackend(ABC):
    """
    Base class for speech-to-text providers.

    Subclasses implement ``_transcribe``; ``transcribe`` wraps it so that
    any failure reaches the caller as a TranscriptionBackendError.
    """

    model: TranscriptionModel

    def __init__(self, http_client: httpx.Client):
        self.http_client = http_client
        self.logger = logging.getLogger(__name__)

    @property
    def provider(self) -> str:
        return self.model.value

    def transcribe(self, chunk_path: Union[str, Path]) -> TranscriptionResult:
        """
        Transcribe one audio chunk.

        Args:
            chunk_path: Path of the chunk audio file

        Returns:
            TranscriptionResult with chunk-relative segment times

        Raises:
            TranscriptionBackendError: If the provider call fails in any way
        """
        chunk_path = Path(chunk_path)
        try:
            return self._transcribe(chunk_path)
        except TranscriptionBackendError:
            # Already carries provider and chunk
            raise
        # Non-2xx response from the provider
        except httpx.HTTPStatusError as e:
            raise TranscriptionBackendError(
                self.provider,
                chunk_path,
                f"HTTP {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        # Connection errors and timeouts
        except httpx.HTTPError as e:
            raise TranscriptionBackendError(
                self.provider, chunk_path, f"Request failed: {e}"
            ) from e
        except OSError as e:
            raise TranscriptionBackendError(
                self.provider, chunk_path, f"Could not read chunk: {e}"
            ) from e
        # Response body did not have the expected shape
        except (KeyError, TypeError, ValueError) as e:
            raise TranscriptionBackendError(
                self.provider, chunk_path, f"Malformed response: {e!r}"
            ) from e

    @abstractmethod
    def _transcribe(self, chunk_path: Path) -> TranscriptionResult:
        raise NotImplementedError

    def _post_audio(
        self,
        url: str,
        chunk_path: Path,
        data: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Upload a chunk as multipart form data and return the JSON body."""
        # Whole chunk is sent in one request
        audio_bytes = chunk_path.read_bytes()
        response = self.http_client.post(
            url,
            files={"file": (chunk_path.name, audio_bytes, "audio/wav")},
            data=data,
            headers=headers,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise TypeError(f"expected a JSON object, got {type(payload).__name__}")
        return payload


class WhisperLocalBackend(TranscriptionBackend):
    """
    Self-hosted Whisper inference server.

    The server already returns sentence-level segments, so its segments are
    passed through unchanged apart from type normalization.
    """

    model = TranscriptionModel.WHISPER_LOCAL

    def __init__(self, http_client: httpx.Client, url: str):
        super().__init__(http_client)
        self.url = url

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.Client) -> "WhisperLocalBackend":
        return cls(http_client, url=settings.whisper_local_url)

    def _transcribe(self, chunk_path: Path) -> TranscriptionResult:
        self.logger.debug(f"Sending {chunk_path} to local Whisper at {self.url}")
        payload = self._post_audio(self.url, chunk_path)

        segments = [_normalize_segment(raw) for raw in payload.get("segments") or []]
        return TranscriptionResult(language=payload.get("language") or None, segments=segments)


class ElevenLabsScribeBackend(TranscriptionBackend):
    """
    Hosted ElevenLabs Scribe speech-to-text API.

    Scribe answers with word-granularity tokens (words, spacing and audio
    events, optionally diarized), which are grouped into segments here.
    """

    model = TranscriptionModel.ELEVENLABS_SCRIBE

    def __init__(
        self,
        http_client: httpx.Client,
        api_key: Optional[str],
        base_url: str = "https://api.elevenlabs.io",
        model_id: str = "scribe_v1"
    ):
        super().__init__(http_client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model_id = model_id

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.Client) -> "ElevenLabsScribeBackend":
        return cls(
            http_client,
            api_key=settings.elevenlabs_api_key,
            base_url=settings.elevenlabs_base_url,
            model_id=settings.elevenlabs_model_id,
        )

    def _transcribe(self, chunk_path: Path) -> TranscriptionResult:
        # A missing key fails this chunk only
        if not self.api_key:
            raise TranscriptionBackendError(
                self.provider, chunk_path, "ELEVENLABS_API_KEY is not configured"
            )

        payload = self._post_audio(
            f"{self.base_url}/v1/speech-to-text",
            chunk_path,
            # Word timestamps are needed to rebuild segments
            data={"model_id": self.model_id, "timestamps_granularity": "word"},
            headers={"xi-api-key": self.api_key},
        )

        words = payload.get("words") or []
        if not isinstance(words, list):
            raise TypeError("'words' must be a list")

        segments = [_normalize_segment(s) for s in group_words_into_segments(words)]
        return TranscriptionResult(language=payload.get("language_code") or None, segments=segments)


# Mapping of transcription models to backend implementations
BACKEND_CLASSES = {
    TranscriptionModel.WHISPER_LOCAL: WhisperLocalBackend,
    TranscriptionModel.ELEVENLABS_SCRIBE: ElevenLabsScribeBackend,
}


def create_backend(
    model: Union[str, TranscriptionModel],
    settings: Settings,
    http_client: httpx.Client
) -> TranscriptionBackend:
    """
    Build the backend for a model identifier.

    Args:
        model: Backend identifier or TranscriptionModel member
        settings: Settings holding provider endpoints and credentials
        http_client: Shared HTTP client used for provider requests

    Returns:
        A ready-to-use TranscriptionBackend

    Raises:
        UnsupportedModelError: If the identifier is not a known backend
    """
    return BACKEND_CLASSES[validate_model(model)].from_settings(settings, http_client)
