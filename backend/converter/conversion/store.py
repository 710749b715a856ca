"""Durable task records. All lifecycle changes go through a compare-and-swap on state."""
import json
import logging
import uuid
from typing import Any, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from converter.conversion.errors import ConflictError, InvalidTransitionError, NotFoundError
from converter.conversion.models import (
    TERMINAL_STATES,
    TRANSITIONS,
    ConversionTask,
    TaskSpec,
    TaskState,
)
from converter.db import now_iso, session

logger = logging.getLogger("converter.store")

TASK_COLUMNS = (
    "id", "user_id", "input_method", "input_location", "filename", "input_format", "file_size",
    "output_format", "options_json", "engine", "state", "version", "attempts", "progress",
    "output_location", "output_size", "duration_seconds", "error_class", "error_message",
    "retry_of", "tag", "callback_url", "created_at", "updated_at", "started_at", "completed_at",
)

# Columns a transition may write besides state/version/updated_at
PAYLOAD_COLUMNS = frozenset({
    "attempts", "progress", "started_at", "completed_at",
    "output_location", "output_size", "duration_seconds",
    "error_class", "error_message",
})
OUTPUT_COLUMNS = ("output_location", "output_size", "duration_seconds")
FAILURE_COLUMNS = ("error_class", "error_message")

_SELECT = f"SELECT {', '.join(TASK_COLUMNS)} FROM conversion_tasks"


class TaskStore:
    """Conversion task table. `transition` is the only way to change a task's lifecycle fields."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def create(self, spec: TaskSpec) -> ConversionTask:
        now = now_iso()
        params = {
            "id": str(uuid.uuid4()),
            "user_id": spec.user_id,
            "input_method": spec.input_method.value,
            "input_location": spec.input_location,
            "filename": spec.filename,
            "input_format": spec.input_format,
            "file_size": spec.file_size,
            "output_format": spec.output_format,
            "options_json": json.dumps(spec.options.to_dict()),
            "engine": spec.engine,
            "state": TaskState.PENDING.value,
            "retry_of": spec.retry_of,
            "tag": spec.tag,
            "callback_url": spec.callback_url,
            "now": now,
        }
        with session(self._engine) as conn:
            conn.execute(
                text("""
                    INSERT INTO conversion_tasks (
                        id, user_id, input_method, input_location, filename, input_format, file_size,
                        output_format, options_json, engine, state, version, attempts, progress,
                        retry_of, tag, callback_url, created_at, updated_at
                    ) VALUES (
                        :id, :user_id, :input_method, :input_location, :filename, :input_format, :file_size,
                        :output_format, :options_json, :engine, :state, 0, 0, 0,
                        :retry_of, :tag, :callback_url, :now, :now
                    )
                """),
                params,
            )
            task = self._fetch(conn, params["id"])
        logger.info(
            "Task %s created (%s -> %s via %s)",
            task.id, task.input_format, task.output_format, task.engine,
        )
        return task

    def _fetch(self, conn, task_id: str) -> ConversionTask:
        row = conn.execute(text(f"{_SELECT} WHERE id = :id"), {"id": task_id}).mappings().first()
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return ConversionTask.from_row(row)

    def get(self, task_id: str) -> ConversionTask:
        with self._engine.connect() as conn:
            return self._fetch(conn, task_id)

    def transition(
        self,
        task_id: str,
        from_state: TaskState,
        to_state: TaskState,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> ConversionTask:
        """Atomically move a task from `from_state` to `to_state`.

        Raises ConflictError when the stored state (or version, if given) does not match,
        so two writers can never both win. Descriptors are cleared or required so that the
        output descriptor exists only on COMPLETED and the failure descriptor only on FAILED.
        """
        from_state = TaskState(from_state)
        to_state = TaskState(to_state)
        if to_state not in TRANSITIONS[from_state]:
            raise InvalidTransitionError(f"{from_state.value} -> {to_state.value} is not allowed")
        payload = dict(payload or {})
        unknown = set(payload) - PAYLOAD_COLUMNS
        if unknown:
            raise ValueError(f"Transition payload has non-lifecycle fields: {', '.join(sorted(unknown))}")

        if to_state == TaskState.COMPLETED:
            if not payload.get("output_location"):
                raise ValueError("COMPLETED requires output_location")
        else:
            for col in OUTPUT_COLUMNS:
                payload[col] = None
        if to_state == TaskState.FAILED:
            if not payload.get("error_class"):
                raise ValueError("FAILED requires error_class")
        else:
            for col in FAILURE_COLUMNS:
                payload[col] = None

        now = now_iso()
        if to_state in TERMINAL_STATES:
            payload.setdefault("completed_at", now)

        set_parts = ["state = :to_state", "version = version + 1", "updated_at = :now"]
        set_parts += [f"{col} = :{col}" for col in sorted(payload)]
        where = "id = :id AND state = :from_state"
        params = dict(payload, id=task_id, to_state=to_state.value, from_state=from_state.value, now=now)
        if expected_version is not None:
            where += " AND version = :expected_version"
            params["expected_version"] = expected_version

        with session(self._engine) as conn:
            result = conn.execute(
                text(f"UPDATE conversion_tasks SET {', '.join(set_parts)} WHERE {where}"),
                params,
            )
            if result.rowcount != 1:
                current = self._fetch(conn, task_id)
                raise ConflictError(task_id, from_state.value, current.state.value)
            task = self._fetch(conn, task_id)
        logger.info("Task %s: %s -> %s (attempt %s)", task_id, from_state.value, to_state.value, task.attempts)
        return task

    def update_progress(self, task_id: str, progress: int) -> bool:
        """Progress is a hint, not lifecycle state: written only while the task is PROCESSING."""
        progress = max(0, min(100, int(progress)))
        with session(self._engine) as conn:
            result = conn.execute(
                text("""
                    UPDATE conversion_tasks SET progress = :progress, updated_at = :now
                    WHERE id = :id AND state = :state
                """),
                {"progress": progress, "now": now_iso(), "id": task_id, "state": TaskState.PROCESSING.value},
            )
        return result.rowcount == 1

    def list_tasks(
        self,
        state: Optional[TaskState] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[ConversionTask]:
        clauses, params = [], {"lim": limit}
        if state is not None:
            clauses.append("state = :state")
            params["state"] = TaskState(state).value
        if user_id is not None:
            clauses.append("user_id = :user_id")
            params["user_id"] = user_id
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"{_SELECT}{where} ORDER BY created_at DESC LIMIT :lim"),
                params,
            ).mappings().all()
        return [ConversionTask.from_row(r) for r in rows]

    def find_stale_pending(self, created_before: str, limit: int = 100) -> list[ConversionTask]:
        """PENDING tasks older than the given ISO timestamp, oldest first."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"{_SELECT} WHERE state = :state AND created_at < :before ORDER BY created_at LIMIT :lim"),
                {"state": TaskState.PENDING.value, "before": created_before, "lim": limit},
            ).mappings().all()
        return [ConversionTask.from_row(r) for r in rows]

    def prune(self, keep: int) -> int:
        """Delete the oldest terminal tasks so at most `keep` terminal records remain. Returns rows deleted."""
        if keep < 0:
            raise ValueError(f"keep must be 0 or more, got {keep}")
        terminal = [s.value for s in TERMINAL_STATES]
        with session(self._engine) as conn:
            rows = conn.execute(
                text("""
                    SELECT id FROM conversion_tasks
                    WHERE state IN (:s0, :s1, :s2)
                    ORDER BY created_at DESC
                """),
                {"s0": terminal[0], "s1": terminal[1], "s2": terminal[2]},
            ).fetchall()
            stale = [r[0] for r in rows[keep:]]
            for task_id in stale:
                conn.execute(text("DELETE FROM conversion_tasks WHERE id = :id"), {"id": task_id})
        if stale:
            logger.info("Pruned %s terminal tasks (keep=%s)", len(stale), keep)
        return len(stale)
