"""
Background task execution for pipeline stages.

This module provides the TaskQueue class, a small worker pool that delivers
named tasks with JSON-serializable payloads to registered handlers. Each
handler invocation receives a TaskContext carrying a logger and the means to
enqueue follow-up tasks, so a pipeline stage can hand off to the next one.
"""

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from queue import Full, Queue
from time import monotonic
from typing import Any, Callable, Dict, Optional, Set
from uuid import uuid4

from audio_transcription.logging_config import get_logger, log_with_context


class QueueFullError(RuntimeError):
    """Exception raised when a task is enqueued while the queue is at capacity."""
    pass


class TaskContext:
    """
    Per-invocation handle passed to task handlers.

    Attributes:
        task_id: Unique identifier of this delivery
        task_name: Name the task was enqueued under
        logger: Logger for the handler to report progress with
    """

    def __init__(self, task_queue: "TaskQueue", task_id: str, task_name: str, logger: logging.Logger):
        self._task_queue = task_queue
        self.task_id = task_id
        self.task_name = task_name
        self.logger = logger

    def enqueue(self, task_name: str, payload: Dict[str, Any]) -> str:
        """Enqueue a follow-up task on the same queue."""
        return self._task_queue.enqueue(task_name, payload)


TaskHandler = Callable[[Dict[str, Any], TaskContext], None]


class TaskQueue:
    """
    Runs registered task handlers on a bounded worker pool.

    Payloads are serialized to JSON on enqueue and decoded again for the
    handler, so handlers never share mutable state with the enqueuing code.
    A handler that raises is logged and not retried.

    Attributes:
        max_workers: Number of worker threads
        max_queue_size: Maximum number of tasks waiting to start
    """

    def __init__(self, max_workers: int = 1, max_queue_size: int = 100):
        self.max_workers = max_workers
        self.max_queue_size = max_queue_size
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="task-worker")
        self.logger = get_logger(__name__)

        self._handlers: Dict[str, TaskHandler] = {}
        self._futures: Set[Future] = set()

        # Concurrency control, guarded by _concurrency_lock
        self._active_tasks = 0
        self._queued_tasks = 0
        self._concurrency_lock = threading.Lock()

        # Waiting tasks, bounded to apply backpressure on enqueue
        self._task_queue: Queue = Queue(maxsize=max_queue_size)

    def register(self, task_name: str, handler: TaskHandler) -> None:
        """
        Register the handler invoked for tasks enqueued under ``task_name``.

        Raises:
            ValueError: If a handler is already registered for the name
        """
        if task_name in self._handlers:
            raise ValueError(f"A handler is already registered for task {task_name!r}")
        self._handlers[task_name] = handler

    def enqueue(self, task_name: str, payload: Dict[str, Any]) -> str:
        """
        Schedule a task for background execution.

        Args:
            task_name: Name of a registered task
            payload: JSON-serializable task arguments

        Returns:
            The unique task_id of the delivery

        Raises:
            ValueError: If the task is unknown or the payload is not JSON-serializable
            QueueFullError: If the queue is at capacity
        """
        if task_name not in self._handlers:
            raise ValueError(f"No handler registered for task {task_name!r}")

        # Handlers get a decoded copy, never the caller's dict
        try:
            encoded = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Payload for task {task_name!r} is not JSON-serializable: {e}") from e

        task_id = str(uuid4())

        with self._concurrency_lock:
            # Reserve a queue slot before the executor sees the task
            try:
                self._task_queue.put_nowait(task_id)
            except Full:
                raise QueueFullError(
                    f"Task queue is at capacity ({self.max_queue_size} queued). Please retry later."
                ) from None
            self._queued_tasks += 1

            future = self.executor.submit(self._run, task_id, task_name, encoded)
            self._futures.add(future)
        # Outside the lock: the callback runs inline if the task already finished
        future.add_done_callback(self._forget)

        log_with_context(
            self.logger,
            "debug",
            "Task enqueued",
            task_id=task_id,
            task_name=task_name
        )
        return task_id

    def _forget(self, future: Future) -> None:
        with self._concurrency_lock:
            self._futures.discard(future)

    def _run(self, task_id: str, task_name: str, encoded_payload: str) -> None:
        """Execute one delivered task (internal method)."""
        # Task leaves the waiting queue and becomes active
        with self._concurrency_lock:
            self._task_queue.get_nowait()
            self._queued_tasks -= 1
            self._active_tasks += 1

        payload = json.loads(encoded_payload)
        try:
            context = TaskContext(self, task_id, task_name, get_logger(f"{__name__}.{task_name}"))
            self._handlers[task_name](payload, context)
        # No retries; the handler has already recorded the failure on its job
        except Exception as e:
            log_with_context(
                self.logger,
                "error",
                "Task failed",
                job_id=payload.get("job_id"),
                task_id=task_id,
                task_name=task_name,
                error=e
            )
        finally:
            with self._concurrency_lock:
                self._active_tasks -= 1

    def is_at_capacity(self) -> bool:
        """Whether a new task would be rejected."""
        with self._concurrency_lock:
            return self._task_queue.full()

    def get_capacity_info(self) -> dict:
        """
        Get information about current capacity and load.

        Returns:
            Dictionary with active_tasks, queued_tasks, max_workers,
            max_queue_size and available_capacity
        """
        with self._concurrency_lock:
            return {
                "active_tasks": self._active_tasks,
                "queued_tasks": self._queued_tasks,
                "max_workers": self.max_workers,
                "max_queue_size": self.max_queue_size,
                "available_capacity": self.max_queue_size - self._queued_tasks
            }

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no task is queued or running.

        Tasks enqueued by running handlers are waited for as well.

        Returns:
            True if the queue drained, False if the timeout expired first
        """
        deadline = None if timeout is None else monotonic() + timeout
        while True:
            # Re-read each round; handlers may have enqueued follow-ups
            with self._concurrency_lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(pending, timeout=remaining)

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        """Stop accepting work and optionally wait for running tasks."""
        self.logger.info("Shutting down TaskQueue")
        self.executor.shutdown(wait=wait_for_tasks)
