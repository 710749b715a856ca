"""Uniform executor contract shared by every conversion engine."""
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from converter import config
from converter.conversion.errors import TIMEOUT, ExecutionCancelled, ExecutionError
from converter.conversion.models import ConversionTask
from converter.conversion.registry import EngineCapabilities

logger = logging.getLogger("converter.executors")


@dataclass
class ExecutionResult:
    output_location: str
    output_size: int
    duration_seconds: Optional[float] = None


class ExecutionContext:
    """Deadline, cancellation signal and progress sink for one execution attempt."""

    def __init__(
        self,
        task_id: str,
        timeout: float,
        work_dir: Path,
        cancel_check: Optional[Callable[[], bool]] = None,
        progress: Optional[Callable[[int], None]] = None,
        cancel_poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.task_id = task_id
        self.timeout = timeout
        self.work_dir = work_dir
        self._clock = clock
        self.deadline = clock() + timeout
        self._cancel_check = cancel_check
        self._progress = progress
        self._cancel_poll_interval = cancel_poll_interval
        self._last_poll = float("-inf")
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        return max(0.0, self.deadline - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.deadline

    def cancel(self) -> None:
        self._cancelled.set()

    def cancelled(self, force: bool = False) -> bool:
        """Whether the task was cancelled. The store is polled at most once per interval unless `force`."""
        if self._cancelled.is_set():
            return True
        now = self._clock()
        if self._cancel_check is not None and (force or now - self._last_poll >= self._cancel_poll_interval):
            self._last_poll = now
            if self._cancel_check():
                self._cancelled.set()
        return self._cancelled.is_set()

    def checkpoint(self, force: bool = True) -> None:
        if self.cancelled(force=force):
            raise ExecutionCancelled(f"task {self.task_id} cancelled")
        if self.expired():
            raise ExecutionError(TIMEOUT, f"deadline of {self.timeout:.0f}s exceeded", retryable=True)

    def report_progress(self, percent: int) -> None:
        if self._progress is not None:
            self._progress(percent)


class Executor:
    """Base class for engine executors.

    Subclasses implement `execute` and `probe`. `is_available` caches the probe so that
    dispatch does not shell out or call the network for every task.
    """

    engine_id = ""

    def __init__(self, availability_ttl: float = config.AVAILABILITY_CACHE_SECONDS):
        self._availability_ttl = availability_ttl
        self._availability: Optional[tuple[float, bool]] = None
        self._lock = threading.Lock()

    def execute(self, task: ConversionTask, capabilities: EngineCapabilities, ctx: ExecutionContext) -> ExecutionResult:
        raise NotImplementedError

    def probe(self) -> bool:
        raise NotImplementedError

    def is_available(self) -> bool:
        with self._lock:
            now = time.monotonic()
            if self._availability is not None and now - self._availability[0] < self._availability_ttl:
                return self._availability[1]
            try:
                available = self.probe()
            except Exception as e:
                logger.warning("Availability probe for %s failed: %s", self.engine_id, e)
                available = False
            self._availability = (now, available)
            if not available:
                logger.warning("Engine %s is unavailable", self.engine_id)
            return available
