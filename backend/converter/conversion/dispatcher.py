"""Hands PENDING tasks to the queue of workers for their resolved engine."""
import logging
from typing import Mapping, Union

from sqlalchemy.exc import SQLAlchemyError

from converter.conversion.errors import DispatchError
from converter.conversion.models import ConversionTask, TaskState
from converter.conversion.queue import SqlTaskQueue
from converter.conversion.registry import EngineRegistry
from converter.conversion.store import TaskStore

logger = logging.getLogger("converter.dispatcher")


class ConversionDispatcher:
    """Dispatch is idempotent: the queue holds at most one message per task, and a task
    that is no longer PENDING is left alone."""

    def __init__(self, store: TaskStore, queue: SqlTaskQueue, registry: EngineRegistry, executors: Mapping):
        self.store = store
        self.queue = queue
        self.registry = registry
        self.executors = executors

    def dispatch(self, task: Union[ConversionTask, str]) -> bool:
        """Enqueue a PENDING task. Returns True when a new message was queued.

        Raises DispatchError when the engine is unavailable or the queue cannot be reached;
        the task stays PENDING and can be dispatched again later.
        """
        task_id = task if isinstance(task, str) else task.id
        try:
            task = self.store.get(task_id)
        except SQLAlchemyError as e:
            raise DispatchError(f"task store unreachable: {e}")
        if task.state != TaskState.PENDING:
            logger.info("Task %s is %s; nothing to dispatch", task.id, task.state.value)
            return False

        executor = self.executors.get(task.engine)
        if executor is None or not executor.is_available():
            logger.warning("Dispatch of task %s failed: engine %s unavailable", task.id, task.engine)
            raise DispatchError(f"engine {task.engine} is unavailable", task=task)

        try:
            added = self.queue.enqueue(task.id)
        except SQLAlchemyError as e:
            logger.error("Dispatch of task %s failed: queue unreachable (%s)", task.id, e)
            raise DispatchError("queue unreachable", task=task)
        if added:
            logger.info("Task %s dispatched to %s", task.id, task.engine)
        return added
