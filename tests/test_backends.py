"""
Unit tests for the transcription backends.

Provider HTTP traffic is served by httpx.MockTransport, so these tests
exercise the real request building and response parsing without network.
"""

import json

import httpx
import pytest

from audio_transcription.backends import (
    ElevenLabsScribeBackend,
    TranscriptionBackendError,
    UnsupportedModelError,
    WhisperLocalBackend,
    create_backend,
    validate_model,
)
from audio_transcription.config import Settings, TranscriptionModel


@pytest.fixture
def chunk_file(tmp_path):
    """Create a small stand-in chunk file."""
    path = tmp_path / "file-1_chunk_000.wav"
    path.write_bytes(b"RIFF\x00\x00\x00\x00WAVEfmt ")
    return path


def make_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestValidateModel:
    """Tests for model identifier validation."""

    @pytest.mark.parametrize("identifier,expected", [
        ("whisper-local", TranscriptionModel.WHISPER_LOCAL),
        ("elevenlabs-scribe", TranscriptionModel.ELEVENLABS_SCRIBE),
        (TranscriptionModel.WHISPER_LOCAL, TranscriptionModel.WHISPER_LOCAL),
    ])
    def test_known_models(self, identifier, expected):
        assert validate_model(identifier) == expected

    @pytest.mark.parametrize("identifier", ["whisper-large", "", None, "WHISPER-LOCAL"])
    def test_unknown_models_are_rejected(self, identifier):
        """Test that unknown identifiers raise UnsupportedModelError."""
        with pytest.raises(UnsupportedModelError) as exc_info:
            validate_model(identifier)

        assert "whisper-local" in str(exc_info.value)
        assert "elevenlabs-scribe" in str(exc_info.value)

    def test_unsupported_model_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_model("nope")


class TestWhisperLocalBackend:
    """Tests for the self-hosted Whisper backend."""

    def test_segments_pass_through(self, chunk_file):
        """Test that server segments and language are returned as-is."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "language": "en",
                "segments": [
                    {"start": 0, "end": 2.5, "text": " Hello there. "},
                    {"start": 2.5, "end": 4.0, "text": "General Kenobi."},
                ],
            })

        backend = WhisperLocalBackend(make_client(handler), url="http://whisper:8005/transcribe")

        result = backend.transcribe(chunk_file)

        assert result.language == "en"
        assert result.segments == [
            {"start": 0.0, "end": 2.5, "text": "Hello there."},
            {"start": 2.5, "end": 4.0, "text": "General Kenobi."},
        ]
        assert len(requests) == 1
        assert str(requests[0].url) == "http://whisper:8005/transcribe"
        assert requests[0].method == "POST"
        assert b"file-1_chunk_000.wav" in requests[0].read()

    def test_empty_segments(self, chunk_file):
        backend = WhisperLocalBackend(
            make_client(lambda r: httpx.Response(200, json={"language": "en", "segments": []})),
            url="http://whisper/transcribe"
        )

        result = backend.transcribe(chunk_file)

        assert result.segments == []

    def test_non_2xx_raises_backend_error(self, chunk_file):
        """Test that an error status is reported with provider and chunk."""
        backend = WhisperLocalBackend(
            make_client(lambda r: httpx.Response(500, text="model crashed")),
            url="http://whisper/transcribe"
        )

        with pytest.raises(TranscriptionBackendError) as exc_info:
            backend.transcribe(chunk_file)

        error = exc_info.value
        assert error.provider == "whisper-local"
        assert error.chunk_path == str(chunk_file)
        assert "HTTP 500" in str(error)
        assert "model crashed" in str(error)

    def test_network_error_raises_backend_error(self, chunk_file):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = WhisperLocalBackend(make_client(handler), url="http://whisper/transcribe")

        with pytest.raises(TranscriptionBackendError, match="Request failed"):
            backend.transcribe(chunk_file)

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2, 3]",
        json.dumps({"segments": [{"text": "no times"}]}).encode(),
    ])
    def test_malformed_response_raises_backend_error(self, chunk_file, body):
        backend = WhisperLocalBackend(
            make_client(lambda r: httpx.Response(200, content=body)),
            url="http://whisper/transcribe"
        )

        with pytest.raises(TranscriptionBackendError):
            backend.transcribe(chunk_file)

    def test_missing_chunk_raises_backend_error(self, tmp_path):
        backend = WhisperLocalBackend(
            make_client(lambda r: httpx.Response(200, json={})),
            url="http://whisper/transcribe"
        )

        with pytest.raises(TranscriptionBackendError, match="Could not read chunk"):
            backend.transcribe(tmp_path / "missing.wav")


class TestElevenLabsScribeBackend:
    """Tests for the hosted word-level backend."""

    def test_words_are_grouped_into_segments(self, chunk_file):
        """Test that word tokens become sentence segments."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "language_code": "eng",
                "words": [
                    {"type": "word", "text": "Hello.", "start": 0.0, "end": 0.5, "speaker_id": "speaker_0"},
                    {"type": "spacing", "text": " ", "start": 0.5, "end": 0.6, "speaker_id": "speaker_0"},
                    {"type": "word", "text": "World.", "start": 0.6, "end": 1.1, "speaker_id": "speaker_0"},
                ],
            })

        backend = ElevenLabsScribeBackend(
            make_client(handler), api_key="secret", base_url="https://api.example.test/"
        )

        result = backend.transcribe(chunk_file)

        assert result.language == "eng"
        assert result.segments == [
            {"start": 0.0, "end": 0.5, "text": "Hello."},
            {"start": 0.6, "end": 1.1, "text": "World."},
        ]

        request = requests[0]
        assert str(request.url) == "https://api.example.test/v1/speech-to-text"
        assert request.headers["xi-api-key"] == "secret"
        body = request.read()
        assert b"scribe_v1" in body
        assert b"timestamps_granularity" in body
        assert b"word" in body

    def test_missing_api_key_raises_backend_error(self, chunk_file):
        """Test that no request is made without an API key."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={})

        backend = ElevenLabsScribeBackend(make_client(handler), api_key=None)

        with pytest.raises(TranscriptionBackendError, match="ELEVENLABS_API_KEY"):
            backend.transcribe(chunk_file)

        assert requests == []

    def test_unauthorized_raises_backend_error(self, chunk_file):
        backend = ElevenLabsScribeBackend(
            make_client(lambda r: httpx.Response(401, json={"detail": "invalid key"})),
            api_key="bad"
        )

        with pytest.raises(TranscriptionBackendError) as exc_info:
            backend.transcribe(chunk_file)

        assert exc_info.value.provider == "elevenlabs-scribe"
        assert "HTTP 401" in str(exc_info.value)

    def test_words_must_be_a_list(self, chunk_file):
        backend = ElevenLabsScribeBackend(
            make_client(lambda r: httpx.Response(200, json={"words": "oops"})),
            api_key="secret"
        )

        with pytest.raises(TranscriptionBackendError, match="Malformed response"):
            backend.transcribe(chunk_file)

    def test_no_words_yields_no_segments(self, chunk_file):
        backend = ElevenLabsScribeBackend(
            make_client(lambda r: httpx.Response(200, json={"language_code": "en", "words": []})),
            api_key="secret"
        )

        result = backend.transcribe(chunk_file)

        assert result.segments == []
        assert result.language == "en"


class TestCreateBackend:
    """Tests for building backends from settings."""

    @pytest.fixture
    def test_settings(self):
        return Settings(
            _env_file=None,
            WHISPER_LOCAL_URL="http://whisper.internal:9000/transcribe/",
            ELEVENLABS_API_KEY="key-123",
            ELEVENLABS_MODEL_ID="scribe_v2",
        )

    def test_whisper_local_from_settings(self, test_settings):
        with httpx.Client() as client:
            backend = create_backend("whisper-local", test_settings, client)

            assert isinstance(backend, WhisperLocalBackend)
            assert backend.url == "http://whisper.internal:9000/transcribe"
            assert backend.http_client is client

    def test_elevenlabs_from_settings(self, test_settings):
        with httpx.Client() as client:
            backend = create_backend(TranscriptionModel.ELEVENLABS_SCRIBE, test_settings, client)

            assert isinstance(backend, ElevenLabsScribeBackend)
            assert backend.api_key == "key-123"
            assert backend.model_id == "scribe_v2"
            assert backend.provider == "elevenlabs-scribe"

    def test_unknown_model(self, test_settings):
        with httpx.Client() as client:
            with pytest.raises(UnsupportedModelError):
                create_backend("whisper-large", test_settings, client)
