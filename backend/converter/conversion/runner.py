"""Worker side of the pipeline: claim a queued task, run its engine, record the outcome.

Every lifecycle write is a compare-and-swap on (state, version) taken when the attempt
started, so a cancelled task or one taken over after a lease expiry is never overwritten.
"""
import logging
import os
import socket
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from converter import config
from converter.conversion.errors import (
    ENGINE_UNAVAILABLE,
    PROCESS_ERROR,
    VALIDATION_DRIFT,
    ConflictError,
    ExecutionCancelled,
    ExecutionError,
    NotFoundError,
    NotSupportedError,
)
from converter.conversion.models import ConversionTask, QueueMessage, TaskState
from converter.conversion.queue import SqlTaskQueue
from converter.conversion.registry import EngineCapabilities, EngineRegistry
from converter.conversion.store import TaskStore
from converter.db import now_iso
from converter.executors.base import ExecutionContext, ExecutionResult, Executor

logger = logging.getLogger("converter.runner")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class JobRunner:
    def __init__(
        self,
        store: TaskStore,
        queue: SqlTaskQueue,
        registry: EngineRegistry,
        executors: Mapping[str, Executor],
        *,
        max_attempts: int = config.MAX_ATTEMPTS,
        backoff_base: float = config.RETRY_BACKOFF_BASE,
        backoff_max: float = config.RETRY_BACKOFF_MAX,
        worker_id: Optional[str] = None,
        work_dir: Path = config.WORK_DIR,
        poll_interval: float = config.WORKER_POLL_INTERVAL,
    ):
        self._store = store
        self._queue = queue
        self._registry = registry
        self._executors = executors
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.worker_id = worker_id or default_worker_id()
        self.work_dir = Path(work_dir)
        self.poll_interval = poll_interval

    def backoff(self, attempt: int) -> float:
        """Delay before the next attempt after `attempt` failed."""
        return min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))

    def run_once(self) -> bool:
        """Claim and process one message. Returns False when the queue had nothing available."""
        message = self._queue.claim(self.worker_id)
        if message is None:
            return False
        try:
            self.process(message)
        except SQLAlchemyError:
            logger.exception("Worker %s lost the database while processing task %s", self.worker_id, message.task_id)
            try:
                self._queue.release(message, delay=self.backoff_base)
            except SQLAlchemyError as e:
                logger.error("Could not release task %s; it returns after the lease expires: %s", message.task_id, e)
        return True

    def drain(self) -> int:
        """Process messages until none is available. Returns how many were handled."""
        handled = 0
        while self.run_once():
            handled += 1
        return handled

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Worker %s started", self.worker_id)
        while not stop_event.is_set():
            try:
                worked = self.run_once()
            except SQLAlchemyError as e:
                logger.error("Worker %s cannot reach the queue: %s", self.worker_id, e)
                worked = False
            if not worked:
                stop_event.wait(self.poll_interval)
        logger.info("Worker %s stopped", self.worker_id)

    def process(self, message: QueueMessage) -> None:
        try:
            task = self._store.get(message.task_id)
        except NotFoundError:
            logger.warning("Queued task %s no longer exists; dropping message", message.task_id)
            self._queue.ack(message)
            return
        if task.is_terminal:
            logger.info("Task %s already %s; dropping message", task.id, task.state.value)
            self._queue.ack(message)
            return

        executor = self._executors.get(task.engine)
        if executor is not None and not executor.is_available():
            delay = self.backoff(max(1, task.attempts))
            logger.warning(
                "Engine %s unavailable; task %s requeued in %.0fs without using an attempt",
                task.engine, task.id, delay,
            )
            self._queue.release(message, delay=delay)
            return

        task = self._start(task, message)
        if task is None:
            return

        try:
            caps = self._registry.get_capabilities(task.engine)
        except NotSupportedError:
            caps = None
        if caps is None or not caps.supports_pair(task.input_format, task.output_format):
            self._fail(task, message, ExecutionError(
                VALIDATION_DRIFT,
                f"engine {task.engine} no longer converts {task.input_format} -> {task.output_format}",
                retryable=False,
            ))
            return
        if executor is None:
            self._handle_error(task, message, ExecutionError(ENGINE_UNAVAILABLE, f"no executor for {task.engine}"))
            return
        self._execute(task, message, caps, executor)

    def _start(self, task: ConversionTask, message: QueueMessage) -> Optional[ConversionTask]:
        """Move the task into PROCESSING for a new attempt. Returns None when the message is settled."""
        if task.state == TaskState.PENDING:
            payload = {"attempts": 1, "progress": 0, "started_at": now_iso()}
        else:
            if task.attempts >= self.max_attempts:
                # previous worker died during the last allowed attempt
                self._fail(task, message, ExecutionError(
                    PROCESS_ERROR, f"worker lost during attempt {task.attempts}", retryable=False,
                ))
                return None
            payload = {"attempts": task.attempts + 1, "progress": 0}
        try:
            return self._store.transition(
                task.id, task.state, TaskState.PROCESSING, payload, expected_version=task.version,
            )
        except ConflictError as e:
            logger.warning("Task %s changed before attempt could start (%s); dropping message", task.id, e)
            self._queue.ack(message)
            return None

    def _execute(self, task: ConversionTask, message: QueueMessage, caps: EngineCapabilities, executor: Executor) -> None:
        ctx = ExecutionContext(
            task.id,
            caps.timeout,
            self.work_dir,
            cancel_check=lambda: self._is_cancelled(task.id),
            progress=lambda pct: self._store.update_progress(task.id, pct),
        )
        logger.info("Task %s: attempt %s/%s on %s", task.id, task.attempts, self.max_attempts, task.engine)
        try:
            ctx.checkpoint()
            result = executor.execute(task, caps, ctx)
        except ExecutionCancelled:
            logger.info("Task %s cancelled during execution", task.id)
            self._queue.ack(message)
            return
        except ExecutionError as e:
            self._handle_error(task, message, e)
            return
        except Exception as e:
            logger.exception("Unexpected error while executing task %s", task.id)
            self._handle_error(task, message, ExecutionError(PROCESS_ERROR, str(e) or type(e).__name__, retryable=True))
            return
        self._complete(task, message, result)

    def _is_cancelled(self, task_id: str) -> bool:
        try:
            return self._store.get(task_id).state == TaskState.CANCELLED
        except SQLAlchemyError as e:
            logger.warning("Cancellation check for task %s failed: %s", task_id, e)
            return False

    def _complete(self, task: ConversionTask, message: QueueMessage, result: ExecutionResult) -> None:
        payload = {
            "output_location": result.output_location,
            "output_size": result.output_size,
            "duration_seconds": result.duration_seconds,
            "progress": 100,
        }
        try:
            self._store.transition(
                task.id, TaskState.PROCESSING, TaskState.COMPLETED, payload, expected_version=task.version,
            )
        except ConflictError:
            self._resolve_conflict(task, message, result.output_location)
            return
        self._queue.ack(message)

    def _handle_error(self, task: ConversionTask, message: QueueMessage, error: ExecutionError) -> None:
        if error.retryable and task.attempts < self.max_attempts:
            delay = self.backoff(task.attempts)
            logger.warning(
                "Task %s attempt %s/%s failed with %s: %s; retrying in %.0fs",
                task.id, task.attempts, self.max_attempts, error.classification, error.message, delay,
            )
            self._queue.release(message, delay=delay)
            return
        self._fail(task, message, error)

    def _fail(self, task: ConversionTask, message: QueueMessage, error: ExecutionError) -> None:
        payload = {
            "error_class": error.classification,
            "error_message": error.message[:2000],
            "attempts": task.attempts,
        }
        try:
            self._store.transition(
                task.id, TaskState.PROCESSING, TaskState.FAILED, payload, expected_version=task.version,
            )
        except ConflictError:
            self._resolve_conflict(task, message, None)
            return
        logger.error(
            "Task %s failed after %s attempt(s): %s: %s",
            task.id, task.attempts, error.classification, error.message,
        )
        self._queue.ack(message)

    def _resolve_conflict(self, task: ConversionTask, message: QueueMessage, output_location: Optional[str]) -> None:
        current = self._store.get(task.id)
        if current.state == TaskState.CANCELLED:
            if output_location:
                Path(output_location).unlink(missing_ok=True)
            logger.info("Task %s was cancelled while running; result discarded", task.id)
        else:
            logger.warning(
                "Task %s moved to %s (version %s) while this worker held version %s; leaving it",
                task.id, current.state.value, current.version, task.version,
            )
        self._queue.ack(message)


class WorkerPool:
    """Runs `size` JobRunner loops on a thread pool."""

    def __init__(self, runner_factory: Callable[[int], JobRunner], size: int = config.WORKER_COUNT):
        self._runner_factory = runner_factory
        self.size = max(1, size)
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures = []

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        if self._executor is not None:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="converter-worker")
        self._futures = [
            self._executor.submit(self._runner_factory(i).run_forever, self._stop)
            for i in range(self.size)
        ]
        logger.info("Worker pool started with %s worker(s)", self.size)

    def stop(self, wait: bool = True) -> None:
        if self._executor is None:
            return
        self._stop.set()
        self._executor.shutdown(wait=wait)
        for future in self._futures:
            if future.done() and future.exception() is not None:
                logger.error("Worker exited with error: %s", future.exception())
        self._executor = None
        self._futures = []
        logger.info("Worker pool stopped")
