"""Trigger stores — durable (aiosqlite) and in-memory task bindings."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Protocol

import aiosqlite

from taskmanager.db import get_connection
from taskmanager.errors import DuplicateTaskError
from taskmanager.scheduler.models import TaskBinding, TaskKey, to_iso

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS task_bindings (
    group_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    consumer_type TEXT NOT NULL,
    schedule TEXT NOT NULL,
    start_at TEXT NOT NULL,
    parameters TEXT NOT NULL DEFAULT '{}',
    state TEXT NOT NULL DEFAULT 'NORMAL',
    paused INTEGER NOT NULL DEFAULT 0,
    next_fire_at TEXT,
    runs INTEGER NOT NULL DEFAULT 0,
    last_outcome TEXT,
    last_log TEXT,
    created_at TEXT NOT NULL,
    revision TEXT NOT NULL,
    PRIMARY KEY (group_id, task_id)
)
"""

_COLUMNS = (
    "group_id, task_id, consumer_type, schedule, start_at, parameters, state, "
    "paused, next_fire_at, runs, last_outcome, last_log, created_at, revision"
)


class TriggerStore(Protocol):
    """Persistence contract for task bindings.

    Implementations guarantee that a TaskKey maps to at most one binding:
    ``put`` without ``replace`` is a unique insert, so concurrent callers
    racing on the same key get exactly one winner.
    """

    async def ping(self) -> None: ...

    async def put(self, binding: TaskBinding, *, replace: bool = False) -> None: ...

    async def get(self, key: TaskKey) -> TaskBinding | None: ...

    async def query(self, group_id: str | None = None) -> list[TaskBinding]: ...

    async def update(self, binding: TaskBinding) -> bool: ...

    async def set_next_fire(self, key: TaskKey, when: datetime | None) -> None: ...

    async def delete(self, key: TaskKey) -> int: ...

    async def delete_group(self, group_id: str) -> int: ...

    async def delete_all(self) -> int: ...

    async def pause(self, group_id: str, task_id: str | None = None) -> list[TaskKey]: ...

    async def resume(self, group_id: str, task_id: str | None = None) -> list[TaskKey]: ...

    async def groups(self) -> list[str]: ...

    async def count(self) -> int: ...


class SqliteTriggerStore:
    """Persists task bindings in SQLite.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._initialised = True
        return db

    async def _set_paused(
        self, group_id: str, task_id: str | None, *, paused: bool
    ) -> list[TaskKey]:
        sql = "UPDATE task_bindings SET paused = ? WHERE group_id = ? AND paused = ?"
        params: tuple = (int(paused), group_id, int(not paused))
        if task_id is not None:
            sql += " AND task_id = ?"
            params += (task_id,)
        db = await self._connect()
        try:
            cursor = await db.execute(sql + " RETURNING group_id, task_id", params)
            rows = await cursor.fetchall()
            await db.commit()
            return [TaskKey(row[0], row[1]) for row in rows]
        finally:
            await db.close()

    # -- Contract --------------------------------------------------------------

    async def ping(self) -> None:
        """Raise if the database cannot be opened."""
        db = await self._connect()
        try:
            await db.execute("SELECT 1")
        finally:
            await db.close()

    async def put(self, binding: TaskBinding, *, replace: bool = False) -> None:
        """Insert a binding.  Raises DuplicateTaskError when the key exists."""
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        sql = (
            f"{verb} INTO task_bindings ({_COLUMNS}) "  # noqa: S608
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
        )
        db = await self._connect()
        try:
            await db.execute(sql, binding.to_row())
            await db.commit()
        except aiosqlite.IntegrityError as exc:
            raise DuplicateTaskError(binding.key) from exc
        finally:
            await db.close()
        logger.info("Stored binding: %s (%s)", binding.key, binding.consumer_type)

    async def get(self, key: TaskKey) -> TaskBinding | None:
        """Fetch a binding by key, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM task_bindings WHERE group_id = ? AND task_id = ?",  # noqa: S608
                (key.group_id, key.task_id),
            )
            row = await cursor.fetchone()
            return TaskBinding.from_row(row) if row else None
        finally:
            await db.close()

    async def query(self, group_id: str | None = None) -> list[TaskBinding]:
        """Return all bindings, optionally limited to one group."""
        sql = f"SELECT {_COLUMNS} FROM task_bindings"  # noqa: S608
        params: tuple = ()
        if group_id is not None:
            sql += " WHERE group_id = ?"
            params = (group_id,)
        db = await self._connect()
        try:
            cursor = await db.execute(sql + " ORDER BY created_at, group_id, task_id", params)
            rows = await cursor.fetchall()
            return [TaskBinding.from_row(row) for row in rows]
        finally:
            await db.close()

    async def update(self, binding: TaskBinding) -> bool:
        """Write back execution bookkeeping for the stored revision of *binding*.

        Only state, fire bookkeeping and retry fields are written; consumer
        type and the paused flag are left alone.  Returns False when the
        binding was deleted or replaced in the meantime.
        """
        row = binding.to_row()
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                UPDATE task_bindings
                SET schedule = ?, start_at = ?, parameters = ?, state = ?,
                    next_fire_at = ?, runs = ?, last_outcome = ?, last_log = ?
                WHERE group_id = ? AND task_id = ? AND revision = ?
                """,
                (*row[3:7], *row[8:12], binding.group_id, binding.task_id, binding.revision),
            )
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def set_next_fire(self, key: TaskKey, when: datetime | None) -> None:
        """Set or clear the next expected fire time."""
        db = await self._connect()
        try:
            await db.execute(
                "UPDATE task_bindings SET next_fire_at = ? WHERE group_id = ? AND task_id = ?",
                (to_iso(when) if when else None, key.group_id, key.task_id),
            )
            await db.commit()
        finally:
            await db.close()

    async def delete(self, key: TaskKey) -> int:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "DELETE FROM task_bindings WHERE group_id = ? AND task_id = ?",
                (key.group_id, key.task_id),
            )
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def delete_group(self, group_id: str) -> int:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "DELETE FROM task_bindings WHERE group_id = ?", (group_id,)
            )
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def delete_all(self) -> int:
        db = await self._connect()
        try:
            cursor = await db.execute("DELETE FROM task_bindings")
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def pause(self, group_id: str, task_id: str | None = None) -> list[TaskKey]:
        """Pause matching bindings.  Returns the keys whose flag changed."""
        return await self._set_paused(group_id, task_id, paused=True)

    async def resume(self, group_id: str, task_id: str | None = None) -> list[TaskKey]:
        """Resume matching bindings.  Returns the keys whose flag changed."""
        return await self._set_paused(group_id, task_id, paused=False)

    async def groups(self) -> list[str]:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT DISTINCT group_id FROM task_bindings ORDER BY group_id"
            )
            rows = await cursor.fetchall()
            return [row[0] for row in rows]
        finally:
            await db.close()

    async def count(self) -> int:
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT COUNT(*) FROM task_bindings")
            row = await cursor.fetchone()
            return row[0] if row else 0
        finally:
            await db.close()


class InMemoryTriggerStore:
    """Dict-backed trigger store for tests and ephemeral engines.

    Each method completes without yielding to the event loop, so every
    operation is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._bindings: dict[TaskKey, TaskBinding] = {}

    async def ping(self) -> None:
        return None

    async def put(self, binding: TaskBinding, *, replace: bool = False) -> None:
        if binding.key in self._bindings and not replace:
            raise DuplicateTaskError(binding.key)
        self._bindings[binding.key] = copy.deepcopy(binding)

    async def get(self, key: TaskKey) -> TaskBinding | None:
        binding = self._bindings.get(key)
        return copy.deepcopy(binding) if binding else None

    async def query(self, group_id: str | None = None) -> list[TaskBinding]:
        return [
            copy.deepcopy(binding)
            for binding in sorted(
                self._bindings.values(), key=lambda b: (b.created_at, b.group_id, b.task_id)
            )
            if group_id is None or binding.group_id == group_id
        ]

    async def update(self, binding: TaskBinding) -> bool:
        current = self._bindings.get(binding.key)
        if current is None or current.revision != binding.revision:
            return False
        current.schedule = copy.deepcopy(binding.schedule)
        current.start_at = binding.start_at
        current.parameters = copy.deepcopy(binding.parameters)
        current.state = binding.state
        current.next_fire_at = binding.next_fire_at
        current.runs = binding.runs
        current.last_outcome = binding.last_outcome
        current.last_log = binding.last_log
        return True

    async def set_next_fire(self, key: TaskKey, when: datetime | None) -> None:
        binding = self._bindings.get(key)
        if binding is not None:
            binding.next_fire_at = when

    async def delete(self, key: TaskKey) -> int:
        return 1 if self._bindings.pop(key, None) is not None else 0

    async def delete_group(self, group_id: str) -> int:
        keys = [key for key in self._bindings if key.group_id == group_id]
        for key in keys:
            del self._bindings[key]
        return len(keys)

    async def delete_all(self) -> int:
        total = len(self._bindings)
        self._bindings.clear()
        return total

    def _set_paused(self, group_id: str, task_id: str | None, *, paused: bool) -> list[TaskKey]:
        changed = []
        for key, binding in self._bindings.items():
            if key.group_id != group_id or (task_id is not None and key.task_id != task_id):
                continue
            if binding.paused != paused:
                binding.paused = paused
                changed.append(key)
        return changed

    async def pause(self, group_id: str, task_id: str | None = None) -> list[TaskKey]:
        return self._set_paused(group_id, task_id, paused=True)

    async def resume(self, group_id: str, task_id: str | None = None) -> list[TaskKey]:
        return self._set_paused(group_id, task_id, paused=False)

    async def groups(self) -> list[str]:
        return sorted({key.group_id for key in self._bindings})

    async def count(self) -> int:
        return len(self._bindings)
