"""
Configuration management for the audio transcription pipeline.

This module provides configuration settings for the pipeline, including
chunking parameters, transcription provider endpoints, worker pool sizes,
and other operational parameters.

Uses Pydantic Settings for robust environment variable management with
validation and type safety.
"""

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TranscriptionModel(str, Enum):
    """Speech-to-text backends the pipeline can dispatch chunks to."""
    WHISPER_LOCAL = "whisper-local"
    ELEVENLABS_SCRIBE = "elevenlabs-scribe"


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Configuration settings for the transcription pipeline.

    All settings can be overridden using environment variables.
    Pydantic Settings provides automatic validation and type conversion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Backend selection
    default_model: TranscriptionModel = Field(
        default=TranscriptionModel.WHISPER_LOCAL,
        description="Transcription backend used when an upload does not name one",
        alias="DEFAULT_MODEL"
    )

    # Chunking and audio format
    chunk_duration_seconds: float = Field(
        default=300.0,
        gt=0,
        le=3600,
        description="Maximum duration of a single transcription chunk (in seconds)",
        alias="CHUNK_DURATION_SECONDS"
    )

    target_sample_rate: int = Field(
        default=16000,
        ge=8000,
        le=48000,
        description="Sample rate of normalized audio and chunks (in Hz)",
        alias="TARGET_SAMPLE_RATE"
    )

    target_channels: int = Field(
        default=1,
        ge=1,
        le=2,
        description="Channel count of normalized audio and chunks",
        alias="TARGET_CHANNELS"
    )

    upload_dir: str = Field(
        default="uploads",
        description="Directory holding uploads, normalized audio and chunk files",
        alias="UPLOAD_DIR"
    )

    # Provider endpoints
    whisper_local_url: str = Field(
        default="http://localhost:8005/transcribe",
        description="Inference endpoint of the local Whisper server",
        alias="WHISPER_LOCAL_URL"
    )

    elevenlabs_api_key: Optional[str] = Field(
        default=None,
        description="API key for the hosted ElevenLabs speech-to-text API",
        alias="ELEVENLABS_API_KEY"
    )

    elevenlabs_base_url: str = Field(
        default="https://api.elevenlabs.io",
        description="Base URL of the ElevenLabs API",
        alias="ELEVENLABS_BASE_URL"
    )

    elevenlabs_model_id: str = Field(
        default="scribe_v1",
        description="ElevenLabs speech-to-text model identifier",
        alias="ELEVENLABS_MODEL_ID"
    )

    http_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Timeout for provider requests (None waits indefinitely)",
        alias="HTTP_TIMEOUT_SECONDS"
    )

    # Concurrency configuration
    max_concurrent_workers: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Number of task workers running pipeline stages",
        alias="MAX_CONCURRENT_WORKERS"
    )

    max_chunk_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum number of chunks of one job transcribed concurrently",
        alias="MAX_CHUNK_WORKERS"
    )

    max_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum number of tasks that can be queued",
        alias="MAX_QUEUE_SIZE"
    )

    # File upload limits
    max_file_size_mb: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Maximum upload size in megabytes",
        alias="MAX_FILE_SIZE_MB"
    )

    # API configuration
    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port to expose the API",
        alias="API_PORT"
    )

    api_host: str = Field(
        default="0.0.0.0",
        description="API host address",
        alias="API_HOST"
    )

    # Logging configuration
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
        alias="LOG_LEVEL"
    )

    # Job cleanup configuration
    job_cleanup_max_age_hours: int = Field(
        default=24,
        ge=1,
        le=720,  # 30 days max
        description="Maximum age of finished jobs before cleanup (in hours)",
        alias="JOB_CLEANUP_MAX_AGE_HOURS"
    )

    @field_validator("whisper_local_url", "elevenlabs_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """Ensure provider endpoints are HTTP(S) URLs."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https:// (got {v!r})")
        return v.rstrip("/")

    def get_max_file_size_bytes(self) -> int:
        """Get maximum file size in bytes."""
        return self.max_file_size_mb * 1024 * 1024

    def display(self) -> str:
        """
        Get a formatted string of all configuration settings.

        The ElevenLabs API key is never printed, only whether it is set.

        Returns:
            Formatted configuration string
        """
        return f"""
Audio Transcription Pipeline Configuration:
===========================================
Default Model: {self.default_model.value}
Chunk Duration: {self.chunk_duration_seconds} seconds
Target Audio: {self.target_sample_rate} Hz, {self.target_channels} channel(s)
Upload Directory: {self.upload_dir}
Whisper Local URL: {self.whisper_local_url}
ElevenLabs Base URL: {self.elevenlabs_base_url}
ElevenLabs API Key Set: {self.elevenlabs_api_key is not None}
Max Concurrent Workers: {self.max_concurrent_workers}
Max Chunk Workers: {self.max_chunk_workers}
Max Queue Size: {self.max_queue_size}
Max File Size: {self.max_file_size_mb} MB
API Host: {self.api_host}
API Port: {self.api_port}
Log Level: {self.log_level.value}
Job Cleanup Max Age: {self.job_cleanup_max_age_hours} hours
"""


# Create a global settings instance
# This will be imported and used throughout the application
settings = Settings()
