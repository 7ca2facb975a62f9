"""Append-only execution audit trail."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import aiosqlite

from taskmanager.db import get_connection
from taskmanager.scheduler.models import TaskOutcome, from_iso, to_iso, utcnow

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from taskmanager.scheduler.events import ExecutionEvent

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS scheduler_audit (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    audit_id TEXT NOT NULL UNIQUE,
    group_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    fire_time TEXT NOT NULL,
    run_time INTEGER NOT NULL,
    outcome TEXT NOT NULL,
    log TEXT,
    detail TEXT,
    misfire INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
)
"""

_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS ix_scheduler_audit_task
    ON scheduler_audit (group_id, task_id, fire_time)
"""

_COLUMNS = (
    "audit_id, group_id, task_id, node_id, fire_time, run_time, outcome, "
    "log, detail, misfire, created_at"
)

_ORDER = " ORDER BY fire_time DESC, seq DESC"


def make_audit_id() -> str:
    """Generate a new audit record ID."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class AuditRecord:
    """Immutable log entry of one execution attempt."""

    group_id: str
    task_id: str
    node_id: str
    fire_time: datetime
    run_time_ms: int
    outcome: TaskOutcome
    log: str | None = None
    detail: str | None = None
    misfire: bool = False
    id: str = field(default_factory=make_audit_id)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_event(cls, event: ExecutionEvent, node_id: str) -> AuditRecord:
        return cls(
            group_id=event.group_id,
            task_id=event.task_id,
            node_id=node_id,
            fire_time=event.fire_time,
            run_time_ms=event.run_time_ms,
            outcome=event.outcome,
            log=event.log,
            detail=event.detail,
            misfire=event.misfire,
        )

    def to_row(self) -> tuple:
        return (
            self.id,
            self.group_id,
            self.task_id,
            self.node_id,
            to_iso(self.fire_time),
            self.run_time_ms,
            self.outcome.value,
            self.log,
            self.detail,
            int(self.misfire),
            to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> AuditRecord:
        return cls(
            id=row[0],
            group_id=row[1],
            task_id=row[2],
            node_id=row[3],
            fire_time=from_iso(row[4]),
            run_time_ms=row[5],
            outcome=TaskOutcome(row[6]),
            log=row[7],
            detail=row[8],
            misfire=bool(row[9]),
            created_at=from_iso(row[10]),
        )


@dataclass(frozen=True)
class Page:
    """One page of audit records.  ``page`` is 1-based."""

    items: list[AuditRecord]
    total: int
    page: int
    size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0


def _check_paging(page: int, size: int) -> None:
    if page < 1 or size < 1:
        msg = f"page and size must be >= 1, got page={page} size={size}"
        raise ValueError(msg)


class AuditStore(Protocol):
    """Insert and query only; records are never updated or deleted."""

    async def insert(self, record: AuditRecord) -> None: ...

    async def find_all(self, page: int = 1, size: int = 50) -> Page: ...

    async def find(
        self, task_id: str, group_id: str, page: int = 1, size: int = 50
    ) -> Page: ...

    async def most_recent(self, task_id: str, group_id: str) -> AuditRecord | None: ...

    async def count(self, task_id: str, group_id: str) -> int: ...


class SqliteAuditStore:
    """Persists audit records in SQLite.

    Ordering is fire time descending, then insertion order descending, so
    records sharing a fire time come back newest-inserted first.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.execute(_CREATE_INDEX)
            await db.commit()
            self._initialised = True
        return db

    async def _page(self, where: str, params: tuple, page: int, size: int) -> Page:
        _check_paging(page, size)
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM scheduler_audit{where}", params  # noqa: S608
            )
            row = await cursor.fetchone()
            total = row[0] if row else 0
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduler_audit{where}{_ORDER} LIMIT ? OFFSET ?",  # noqa: S608
                (*params, size, (page - 1) * size),
            )
            rows = await cursor.fetchall()
            return Page(
                items=[AuditRecord.from_row(r) for r in rows], total=total, page=page, size=size
            )
        finally:
            await db.close()

    async def insert(self, record: AuditRecord) -> None:
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO scheduler_audit ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",  # noqa: S608
                record.to_row(),
            )
            await db.commit()
        finally:
            await db.close()

    async def find_all(self, page: int = 1, size: int = 50) -> Page:
        return await self._page("", (), page, size)

    async def find(self, task_id: str, group_id: str, page: int = 1, size: int = 50) -> Page:
        return await self._page(
            " WHERE task_id = ? AND group_id = ?", (task_id, group_id), page, size
        )

    async def most_recent(self, task_id: str, group_id: str) -> AuditRecord | None:
        result = await self.find(task_id, group_id, page=1, size=1)
        return result.items[0] if result.items else None

    async def count(self, task_id: str, group_id: str) -> int:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM scheduler_audit WHERE task_id = ? AND group_id = ?",
                (task_id, group_id),
            )
            row = await cursor.fetchone()
            return row[0] if row else 0
        finally:
            await db.close()


class InMemoryAuditStore:
    """List-backed audit store for tests and ephemeral engines."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    def _ordered(self, records: list[tuple[int, AuditRecord]]) -> list[AuditRecord]:
        records.sort(key=lambda item: (item[1].fire_time, item[0]), reverse=True)
        return [record for _, record in records]

    def _select(self, task_id: str | None = None, group_id: str | None = None) -> list[AuditRecord]:
        return self._ordered(
            [
                (seq, record)
                for seq, record in enumerate(self._records)
                if task_id is None or (record.task_id == task_id and record.group_id == group_id)
            ]
        )

    @staticmethod
    def _slice(records: list[AuditRecord], page: int, size: int) -> Page:
        _check_paging(page, size)
        start = (page - 1) * size
        return Page(items=records[start : start + size], total=len(records), page=page, size=size)

    async def insert(self, record: AuditRecord) -> None:
        self._records.append(record)

    async def find_all(self, page: int = 1, size: int = 50) -> Page:
        return self._slice(self._select(), page, size)

    async def find(self, task_id: str, group_id: str, page: int = 1, size: int = 50) -> Page:
        return self._slice(self._select(task_id, group_id), page, size)

    async def most_recent(self, task_id: str, group_id: str) -> AuditRecord | None:
        records = self._select(task_id, group_id)
        return records[0] if records else None

    async def count(self, task_id: str, group_id: str) -> int:
        return len(self._select(task_id, group_id))


class AuditService:
    """Writes execution history without ever blocking an execution.

    Execution paths call ``submit()``, which enqueues onto a bounded queue
    drained by a background writer.  A full queue drops the record with a
    warning.  Callers that need durability use ``create()``, which awaits the
    store directly.

    Args:
        store: Where records are persisted.
        node_id: Identifies this process in every record.
        queue_size: Capacity of the background write queue.
    """

    def __init__(self, store: AuditStore, *, node_id: str = "local", queue_size: int = 1000) -> None:
        self._store = store
        self._node_id = node_id
        self._queue: asyncio.Queue[AuditRecord] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Launch the background writer.  No-op if it is already running."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._drain(), name="audit-writer")
        logger.info("Audit writer started (queue=%d)", self._queue.maxsize)

    async def stop(self, timeout: float = 5.0) -> None:
        """Flush queued records, then stop the writer."""
        worker = self._worker
        if worker is None or worker.done():
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            logger.warning("Audit flush timed out with %d record(s) pending", self.pending)
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
        self._worker = None
        logger.info("Audit writer stopped")

    async def flush(self) -> None:
        """Wait until every queued record has been written."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            await self._write(self._queue.get_nowait())
            self._queue.task_done()

    # -- Writes ----------------------------------------------------------------

    async def create(self, record: AuditRecord) -> str:
        """Persist a record now and return its ID."""
        await self._store.insert(record)
        return record.id

    def submit(self, record: AuditRecord) -> bool:
        """Queue a record for background persistence.  Returns False if dropped."""
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Audit queue is full; dropping record for %s.%s (dropped=%d)",
                record.group_id,
                record.task_id,
                self.dropped,
            )
            return False
        return True

    def on_execution(self, event: ExecutionEvent) -> None:
        self.submit(AuditRecord.from_event(event, self._node_id))

    async def _write(self, record: AuditRecord) -> None:
        try:
            await self._store.insert(record)
        except Exception:
            logger.exception(
                "Failed to write audit record %s for %s.%s",
                record.id,
                record.group_id,
                record.task_id,
            )

    async def _drain(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()

    # -- Queries ---------------------------------------------------------------

    async def find_all(self, page: int = 1, size: int = 50) -> Page:
        return await self._store.find_all(page, size)

    async def find(self, task_id: str, group_id: str, page: int = 1, size: int = 50) -> Page:
        return await self._store.find(task_id, group_id, page, size)

    async def most_recent(self, task_id: str, group_id: str) -> AuditRecord | None:
        return await self._store.most_recent(task_id, group_id)

    async def count(self, task_id: str, group_id: str) -> int:
        return await self._store.count(task_id, group_id)
