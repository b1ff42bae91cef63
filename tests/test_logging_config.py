"""
Unit tests for structured logging.

Records are formatted through PipelineJsonFormatter into a buffer and
decoded, so the tests check the JSON a log collector would see.
"""

import io
import json
import logging
import threading

import pytest

from audio_transcription.logging_config import (
    PipelineJsonFormatter,
    build_formatter,
    log_with_context,
    setup_logging,
)


@pytest.fixture
def json_logger():
    """Logger writing JSON records to an in-memory buffer."""
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(build_formatter(use_json=True))

    logger = logging.getLogger("tests.logging_config")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)

    def records():
        return [json.loads(line) for line in stream.getvalue().splitlines()]

    yield logger, records
    logger.removeHandler(handler)


@pytest.fixture
def restore_root_logger():
    root_logger = logging.getLogger()
    handlers, level = root_logger.handlers[:], root_logger.level
    yield root_logger
    root_logger.handlers = handlers
    root_logger.setLevel(level)
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.NOTSET)


class TestFormatter:
    """Tests for the JSON record layout."""

    def test_standard_fields(self, json_logger):
        logger, records = json_logger

        logger.info("Worker started")

        record = records()[0]
        assert record["message"] == "Worker started"
        assert record["level"] == "INFO"
        assert record["logger"] == "tests.logging_config"
        assert record["thread"] == threading.current_thread().name
        assert record["source"].startswith("test_logging_config.test_standard_fields:")
        assert "timestamp" in record

    def test_records_from_worker_thread_name_it(self, json_logger):
        logger, records = json_logger

        worker = threading.Thread(target=logger.info, args=("from worker",), name="chunk-worker_0")
        worker.start()
        worker.join()

        assert records()[0]["thread"] == "chunk-worker_0"

    def test_plain_formatter(self):
        assert not isinstance(build_formatter(use_json=False), PipelineJsonFormatter)


class TestLogWithContext:
    """Tests for context fields added by log_with_context."""

    def test_chunk_fields(self, json_logger):
        """Test that chunk positions are logged 0-based and as a readable fraction."""
        logger, records = json_logger

        log_with_context(logger, "info", "Chunk transcribed", job_id="job-1", chunk_index=1, total_chunks=3)

        record = records()[0]
        assert record["job_id"] == "job-1"
        assert record["chunk_index"] == 1
        assert record["total_chunks"] == 3
        assert record["chunk"] == "2/3"

    def test_first_chunk_index_is_kept(self, json_logger):
        logger, records = json_logger

        log_with_context(logger, "info", "Chunk transcribed", chunk_index=0)

        record = records()[0]
        assert record["chunk_index"] == 0
        assert "chunk" not in record

    def test_empty_identifiers_are_omitted(self, json_logger):
        logger, records = json_logger

        log_with_context(logger, "debug", "Stage started", job_id="job-1", file_id=None, stage="preprocess")

        record = records()[0]
        assert record["level"] == "DEBUG"
        assert record["stage"] == "preprocess"
        assert "file_id" not in record

    def test_error_fields_and_traceback(self, json_logger):
        logger, records = json_logger

        try:
            raise RuntimeError("provider returned 502")
        except RuntimeError as e:
            log_with_context(logger, "error", "Chunk transcription failed", job_id="job-1", error=e)

        record = records()[0]
        assert record["level"] == "ERROR"
        assert record["error_type"] == "RuntimeError"
        assert record["error_message"] == "provider returned 502"
        assert "provider returned 502" in record["exception"]


class TestSetupLogging:
    """Tests for root logger configuration."""

    def test_replaces_root_handlers(self, restore_root_logger):
        setup_logging(log_level="warning")

        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, PipelineJsonFormatter)

    def test_log_file_handler(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "service.log"

        setup_logging(log_level="INFO", log_file=str(log_file))
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert len(restore_root_logger.handlers) == 2
        assert json.loads(log_file.read_text().splitlines()[0])["message"] == "Logging configured"

    def test_http_client_loggers_quieted(self, restore_root_logger):
        setup_logging(log_level="DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_unknown_level_rejected(self, restore_root_logger):
        with pytest.raises(ValueError, match="Unknown log level"):
            setup_logging(log_level="LOUD")
