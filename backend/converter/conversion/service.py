"""Conversion task service: creation, status, cancellation and re-dispatch on top of the store and dispatcher."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlparse

from converter import config
from converter.conversion.dispatcher import ConversionDispatcher
from converter.conversion.errors import (
    ConflictError,
    DispatchError,
    NotSupportedError,
    ValidationError,
)
from converter.conversion.models import (
    ConversionTask,
    InputMethod,
    TaskSpec,
    TaskState,
)
from converter.conversion.probe import detect_format, extension_of
from converter.conversion.registry import EngineRegistry
from converter.conversion.store import TaskStore
from converter.conversion.validator import validate

logger = logging.getLogger("converter.service")


@dataclass
class CreateTaskRequest:
    """Caller input for a new task. `input_location` is a URL, or the saved path of an upload."""

    input_method: Union[InputMethod, str]
    input_location: str
    filename: str
    output_format: str
    input_format: Optional[str] = None
    conversion_options: Optional[Mapping[str, Any]] = None
    user_id: Optional[str] = None
    file_size: Optional[int] = None
    tag: Optional[str] = None
    callback_url: Optional[str] = None


def normalise_format(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip().lower().lstrip(".")
    if value == "jpeg":
        return "jpg"
    return value or None


class ConversionService:
    """Synchronous entry points. Errors raised here happen before a task exists, except
    DispatchError, which carries the created (still PENDING) task."""

    def __init__(
        self,
        store: TaskStore,
        registry: EngineRegistry,
        dispatcher: ConversionDispatcher,
        upload_dir: Path = config.UPLOAD_DIR,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.upload_dir = Path(upload_dir)

    def create_task(self, request: CreateTaskRequest) -> ConversionTask:
        try:
            method = InputMethod(request.input_method)
        except ValueError:
            raise ValidationError("inputMethod", "must be 'upload' or 'url'")
        location = (request.input_location or "").strip()
        if method == InputMethod.URL:
            parsed = urlparse(location)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValidationError("inputUrl", "must be an http or https URL")
        elif not location or not Path(location).is_file():
            raise ValidationError("inputFile", "uploaded file is missing")

        filename = (request.filename or "").strip() or Path(urlparse(location).path).name or "input"
        output_format = normalise_format(request.output_format)
        if not output_format:
            raise ValidationError("outputFormat", "is required")
        input_format = normalise_format(request.input_format) or normalise_format(extension_of(filename))
        if not input_format and method == InputMethod.UPLOAD:
            input_format = detect_format(Path(location))
        if not input_format:
            raise ValidationError("inputFormat", "could not be determined from the filename")

        file_size = request.file_size
        if file_size is None and method == InputMethod.UPLOAD:
            file_size = Path(location).stat().st_size

        options = request.conversion_options or {}
        if not isinstance(options, Mapping):
            raise ValidationError("conversionOptions", "must be an object")
        engine_id = self._resolve_engine(input_format, output_format, options, file_size)
        snapshot = validate(options, self.registry.get_capabilities(engine_id))

        task = self.store.create(TaskSpec(
            input_method=method,
            input_location=location,
            filename=filename,
            input_format=input_format,
            output_format=output_format,
            options=snapshot,
            engine=engine_id,
            user_id=request.user_id,
            file_size=file_size,
            tag=request.tag,
            callback_url=request.callback_url,
        ))
        self._dispatch_new(task)
        return task

    def _resolve_engine(
        self,
        input_format: str,
        output_format: str,
        options: Mapping[str, Any],
        file_size: Optional[int],
    ) -> str:
        try:
            return self.registry.resolve_engine(input_format, output_format, options, file_size)
        except NotSupportedError:
            pair = [e for e in self.registry.engines() if e.supports_pair(input_format, output_format)]
            if not pair:
                raise
            fitting = [e for e in pair if file_size is None or file_size <= e.max_file_size]
            if not fitting:
                limit_mb = max(e.max_file_size for e in pair) // (1024 * 1024)
                raise ValidationError("file", f"exceeds the {limit_mb} MB limit for {input_format} -> {output_format}")
            # name the offending option against the preferred engine for the pair
            validate(options, fitting[0])
            raise

    def _dispatch_new(self, task: ConversionTask) -> None:
        try:
            self.dispatcher.dispatch(task)
        except DispatchError as e:
            e.task = task
            raise

    def get_task(self, task_id: str) -> ConversionTask:
        return self.store.get(task_id)

    def get_status(self, task_id: str) -> dict:
        task = self.store.get(task_id)
        status = {
            "task_id": task.id,
            "state": task.state.value,
            "progress": task.progress,
            "engine": task.engine,
            "input_format": task.input_format,
            "output_format": task.output_format,
            "attempts": task.attempts,
            "created_at": task.created_at,
            "updated_at": task.updated_at,
            "started_at": task.started_at,
            "completed_at": task.completed_at,
            "retry_of": task.retry_of,
        }
        if task.output is not None:
            status["output"] = task.output
        if task.failure is not None:
            status["error"] = task.failure
        return status

    def list_tasks(
        self,
        state: Optional[Union[TaskState, str]] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[ConversionTask]:
        return self.store.list_tasks(state=TaskState(state) if state else None, user_id=user_id, limit=limit)

    def cancel(self, task_id: str) -> ConversionTask:
        """Move a PENDING or PROCESSING task to CANCELLED. Raises ConflictError for terminal tasks."""
        while True:
            task = self.store.get(task_id)
            if task.is_terminal:
                raise ConflictError(task.id, "pending or processing", task.state.value)
            try:
                task = self.store.transition(task.id, task.state, TaskState.CANCELLED, expected_version=task.version)
            except ConflictError as e:
                logger.warning("Cancel of task %s raced with another update (%s); re-reading", task_id, e)
                continue
            logger.info("Task %s cancelled", task_id)
            return task

    def dispatch(self, task_id: str) -> bool:
        return self.dispatcher.dispatch(task_id)

    def retry(self, task_id: str) -> ConversionTask:
        """Administrative retry: a FAILED task is cloned into a new PENDING task linked through retry_of."""
        failed = self.store.get(task_id)
        if failed.state != TaskState.FAILED:
            raise ConflictError(failed.id, TaskState.FAILED.value, failed.state.value)
        task = self.store.create(TaskSpec(
            input_method=failed.input_method,
            input_location=failed.input_location,
            filename=failed.filename,
            input_format=failed.input_format,
            output_format=failed.output_format,
            options=failed.options,
            engine=failed.engine,
            user_id=failed.user_id,
            file_size=failed.file_size,
            tag=failed.tag,
            callback_url=failed.callback_url,
            retry_of=failed.id,
        ))
        logger.info("Task %s retried as %s", failed.id, task.id)
        self._dispatch_new(task)
        return task

    def make_runner(self, worker_id: Optional[str] = None, **kwargs):
        """JobRunner sharing this service's store, queue, registry and executors."""
        from converter.conversion.runner import JobRunner

        d = self.dispatcher
        return JobRunner(d.store, d.queue, d.registry, d.executors, worker_id=worker_id, **kwargs)

    def redispatch_stale(self, older_than_seconds: float = 60) -> int:
        """Re-dispatch PENDING tasks older than the threshold. Returns how many were newly queued."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        queued = 0
        for task in self.store.find_stale_pending(cutoff):
            try:
                if self.dispatcher.dispatch(task):
                    queued += 1
            except DispatchError as e:
                logger.warning("Stale task %s still not dispatchable: %s", task.id, e)
        if queued:
            logger.info("Re-dispatched %s stale pending task(s)", queued)
        return queued


_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        from converter.conversion.queue import SqlTaskQueue
        from converter.conversion.registry import default_registry
        from converter.db import init_db
        from converter.executors import default_executors

        engine = init_db()
        store = TaskStore(engine)
        registry = default_registry()
        dispatcher = ConversionDispatcher(store, SqlTaskQueue(engine), registry, default_executors())
        _conversion_service = ConversionService(store, registry, dispatcher)
    return _conversion_service
