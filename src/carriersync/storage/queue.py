"""Durable at-least-once message queue stored in the carriersync database.

Messages carry string attributes plus an opaque body.  ``publish`` makes a
message visible after an optional delay; ``receive`` hides claimed messages
for a visibility timeout, and anything not ``delete``-d by then is delivered
again.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

if TYPE_CHECKING:
    from carriersync.storage.database import Database
    from carriersync.sync.state import SyncState

log = structlog.get_logger(__name__)

SYNC_QUEUE = "device-sync"
USAGE_QUEUE = "device-usage"
DETAIL_QUEUE = "device-detail"


class QueueError(Exception):
    """Raised when a message cannot be published or acknowledged."""


class QueueMessage(BaseModel):
    """A delivered message."""

    id: int
    queue: str
    attributes: dict[str, str]
    body: str = ""
    receive_count: int = 0


class ContinuationQueue:
    """A named queue backed by the ``queue_message`` table."""

    def __init__(
        self,
        db: Database,
        name: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self.name = name
        self._clock = clock

    async def publish(self, attributes: dict[str, str], body: str = "", *, delay_seconds: float = 0) -> int:
        if delay_seconds < 0:
            msg = f"delay_seconds must be >= 0, got {delay_seconds}"
            raise QueueError(msg)
        cur = await self._db.conn.execute(
            """
            INSERT INTO queue_message (queue, attributes_json, body, visible_at)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            (self.name, json.dumps(attributes, sort_keys=True), body, self._clock() + delay_seconds),
        )
        row = await cur.fetchone()
        await self._db.conn.commit()
        log.debug("message_published", queue=self.name, message_id=row["id"], delay=delay_seconds)
        return row["id"]

    async def publish_state(self, state: SyncState, *, delay_seconds: float = 0) -> int:
        return await self.publish(state.to_attributes(), state.body, delay_seconds=delay_seconds)

    async def receive(self, *, max_messages: int = 1, visibility_timeout: float = 900.0) -> list[QueueMessage]:
        """Claim up to *max_messages* visible messages, oldest first."""
        now = self._clock()
        cur = await self._db.conn.execute(
            """
            SELECT * FROM queue_message
            WHERE queue = ? AND visible_at <= ?
            ORDER BY visible_at, id LIMIT ?
            """,
            (self.name, now, max_messages),
        )
        rows = await cur.fetchall()
        messages: list[QueueMessage] = []
        for row in rows:
            await self._db.conn.execute(
                "UPDATE queue_message SET visible_at = ?, receive_count = receive_count + 1 WHERE id = ?",
                (now + visibility_timeout, row["id"]),
            )
            messages.append(
                QueueMessage(
                    id=row["id"],
                    queue=row["queue"],
                    attributes=json.loads(row["attributes_json"]),
                    body=row["body"],
                    receive_count=row["receive_count"] + 1,
                )
            )
        await self._db.conn.commit()
        return messages

    async def delete(self, message_id: int) -> None:
        cur = await self._db.conn.execute(
            "DELETE FROM queue_message WHERE id = ? AND queue = ?", (message_id, self.name)
        )
        await self._db.conn.commit()
        if cur.rowcount == 0:
            log.warning("message_already_deleted", queue=self.name, message_id=message_id)

    async def depth(self, *, visible_only: bool = False) -> int:
        if visible_only:
            cur = await self._db.conn.execute(
                "SELECT COUNT(*) AS n FROM queue_message WHERE queue = ? AND visible_at <= ?",
                (self.name, self._clock()),
            )
        else:
            cur = await self._db.conn.execute(
                "SELECT COUNT(*) AS n FROM queue_message WHERE queue = ?", (self.name,)
            )
        row = await cur.fetchone()
        return row["n"]

    async def peek(self) -> list[QueueMessage]:
        """All messages on the queue regardless of visibility, oldest first."""
        cur = await self._db.conn.execute(
            "SELECT * FROM queue_message WHERE queue = ? ORDER BY id", (self.name,)
        )
        rows = await cur.fetchall()
        return [
            QueueMessage(
                id=r["id"],
                queue=r["queue"],
                attributes=json.loads(r["attributes_json"]),
                body=r["body"],
                receive_count=r["receive_count"],
            )
            for r in rows
        ]


class QueueSet:
    """The queues the sync pipeline publishes to."""

    def __init__(self, db: Database, *, clock: Callable[[], float] = time.time) -> None:
        self.sync = ContinuationQueue(db, SYNC_QUEUE, clock=clock)
        self.usage = ContinuationQueue(db, USAGE_QUEUE, clock=clock)
        self.detail = ContinuationQueue(db, DETAIL_QUEUE, clock=clock)
