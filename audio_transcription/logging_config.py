"""
Structured logging for the audio transcription pipeline.

Every record is emitted as one JSON object. Stage tasks and chunk
transcriptions run on worker threads, so each record carries the thread
name next to the job, file and chunk identifiers passed through
``log_with_context``.
"""

import logging
import sys
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "multipart", "python_multipart")

LOG_FORMAT = "%(timestamp)s %(level)s %(logger)s %(message)s"
PLAIN_LOG_FORMAT = "%(asctime)s [%(threadName)s] %(name)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class PipelineJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that stamps every record with where it came from.

    Besides level and logger, the source location and the emitting thread
    are added, which tells stage workers and chunk workers apart.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["thread"] = record.threadName
        log_record["source"] = f"{record.module}.{record.funcName}:{record.lineno}"

        if record.exc_info and "exception" not in log_record:
            log_record["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_record["stack_trace"] = self.formatStack(record.stack_info)


def build_formatter(use_json: bool = True) -> logging.Formatter:
    """Return the JSON formatter, or a plain one for local debugging."""
    if use_json:
        return PipelineJsonFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    return logging.Formatter(PLAIN_LOG_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_json: bool = True
) -> None:
    """
    Configure the root logger for the service.

    Replaces any existing root handlers with a stdout handler (and a file
    handler when ``log_file`` is given), and raises the HTTP client and
    multipart loggers to WARNING.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file to log to in addition to stdout
        use_json: Emit JSON records (default) or plain text
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    formatter = build_formatter(use_json)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root_logger.info(
        "Logging configured",
        extra={"log_level": log_level, "use_json": use_json, "log_file": log_file}
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _job_context(
    job_id: Optional[str],
    file_id: Optional[str],
    file_path: Optional[str],
    chunk_index: Optional[int],
    total_chunks: Optional[int],
) -> Dict[str, Any]:
    context: Dict[str, Any] = {
        key: value
        for key, value in (("job_id", job_id), ("file_id", file_id), ("file_path", file_path))
        if value
    }

    if total_chunks is not None:
        context["total_chunks"] = total_chunks

    if chunk_index is not None:
        context["chunk_index"] = chunk_index
        # 1-based position for humans reading the logs
        if total_chunks is not None:
            context["chunk"] = f"{chunk_index + 1}/{total_chunks}"

    return context


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    job_id: Optional[str] = None,
    file_id: Optional[str] = None,
    file_path: Optional[str] = None,
    chunk_index: Optional[int] = None,
    total_chunks: Optional[int] = None,
    error: Optional[BaseException] = None,
    **kwargs
) -> None:
    """
    Log ``message`` with job, file and chunk fields attached.

    Empty identifiers are left out. ``chunk_index`` is 0-based; when
    ``total_chunks`` is known a readable ``chunk`` field ("2/3") is added
    too. An ``error`` adds ``error_type`` and ``error_message`` and attaches
    the traceback.

    Example:
        >>> log_with_context(logger, "info", "Chunk transcribed",
        ...                  job_id=job.job_id, chunk_index=1, total_chunks=3)
    """
    context = _job_context(job_id, file_id, file_path, chunk_index, total_chunks)

    if error is not None:
        context["error_type"] = type(error).__name__
        context["error_message"] = str(error)

    context.update(kwargs)

    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra=context,
        exc_info=error if error is not None else None
    )
