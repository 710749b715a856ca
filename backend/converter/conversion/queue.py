"""Durable work queue stored next to the task table.

One message per task id at most. Workers claim a message with a compare-and-swap on
`claimed_by`; a claim older than the lease is treated as abandoned (worker crash) and
becomes claimable again.
"""
import logging
import time
from typing import Callable, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from converter import config
from converter.conversion.models import QueueMessage
from converter.db import now_iso, session

logger = logging.getLogger("converter.queue")


class SqlTaskQueue:
    def __init__(
        self,
        engine: Engine,
        lease_seconds: float = config.QUEUE_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self._lease = lease_seconds
        self._clock = clock

    def enqueue(self, task_id: str, delay: float = 0) -> bool:
        """Add a message for the task. Returns False when one is already queued."""
        params = {"task_id": task_id, "available_at": self._clock() + delay, "now": now_iso()}
        if self._engine.dialect.name == "mysql":
            stmt = """
                INSERT IGNORE INTO task_queue (task_id, available_at, enqueued_at)
                VALUES (:task_id, :available_at, :now)
            """
        else:
            stmt = """
                INSERT OR IGNORE INTO task_queue (task_id, available_at, enqueued_at)
                VALUES (:task_id, :available_at, :now)
            """
        with session(self._engine) as conn:
            result = conn.execute(text(stmt), params)
        added = result.rowcount == 1
        if added:
            logger.info("Enqueued task %s (delay=%.1fs)", task_id, delay)
        else:
            logger.debug("Task %s already queued", task_id)
        return added

    def claim(self, worker_id: str, batch: int = 5) -> Optional[QueueMessage]:
        """Claim the oldest available message, or return None when there is nothing to do."""
        now = self._clock()
        params = {"now": now, "expired": now - self._lease, "lim": batch}
        available = """
            available_at <= :now AND (claimed_by IS NULL OR claimed_at < :expired)
        """
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT id, task_id FROM task_queue WHERE {available} ORDER BY available_at, id LIMIT :lim"),
                params,
            ).fetchall()
        for message_id, task_id in rows:
            with session(self._engine) as conn:
                result = conn.execute(
                    text(f"""
                        UPDATE task_queue SET claimed_by = :worker, claimed_at = :now
                        WHERE id = :id AND {available}
                    """),
                    dict(params, worker=worker_id, id=message_id),
                )
            if result.rowcount == 1:
                logger.debug("Worker %s claimed task %s", worker_id, task_id)
                return QueueMessage(id=message_id, task_id=task_id, claimed_by=worker_id, claimed_at=now)
        return None

    def release(self, message: QueueMessage, delay: float = 0) -> None:
        """Give the message back so it becomes available again after `delay` seconds."""
        with session(self._engine) as conn:
            conn.execute(
                text("""
                    UPDATE task_queue SET claimed_by = NULL, claimed_at = NULL, available_at = :available_at
                    WHERE id = :id AND claimed_by = :worker
                """),
                {"available_at": self._clock() + delay, "id": message.id, "worker": message.claimed_by},
            )

    def ack(self, message: QueueMessage) -> None:
        with session(self._engine) as conn:
            conn.execute(
                text("DELETE FROM task_queue WHERE id = :id AND claimed_by = :worker"),
                {"id": message.id, "worker": message.claimed_by},
            )

    def depth(self) -> int:
        with self._engine.connect() as conn:
            return int(conn.execute(text("SELECT COUNT(*) FROM task_queue")).scalar() or 0)

    def contains(self, task_id: str) -> bool:
        with self._engine.connect() as conn:
            row = conn.execute(text("SELECT 1 FROM task_queue WHERE task_id = :t"), {"t": task_id}).first()
        return row is not None
