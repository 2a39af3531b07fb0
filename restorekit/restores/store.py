# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore store - SQLite persistence for restore records and the
operation audit trail.

Restore records are keyed by (asset_key, snapshot, restore_type). A
provisioning run first reserves its key with a ``pending`` row; the
primary key makes that reservation atomic across processes, so two
concurrent requests for the same restore cannot both proceed. The row
becomes ``active`` when the final stage saves it. A pending row carries
the operation id and pid of its holder so a reservation left behind by
a crashed process can be taken over and cleaned up.

The ``operations`` table records every create/remove run with the
stages it committed and the error it ended with, if any.
"""

import json
import sqlite3
from datetime import datetime, UTC
from pathlib import Path
from typing import List

import aiosqlite
import structlog

from restorekit.errors import explain_restore_exists, explain_restore_not_found
from restorekit.exceptions import (
    RestoreExistsError,
    RestoreNotFoundError,
    RestoreStoreError,
)
from restorekit.restores.types import (
    OperationRecord,
    RestoreRecord,
    RestoreState,
    RestoreType,
)

logger = structlog.get_logger()


_RESTORE_COLUMNS = (
    "asset_key, snapshot, restore_type, suffix, state, options, created_at, activated_at, "
    "operation_id, owner_pid"
)


def _row_to_restore(row: tuple) -> RestoreRecord:
    return RestoreRecord(
        asset_key=row[0],
        snapshot=row[1],
        restore_type=RestoreType(row[2]),
        suffix=row[3],
        state=RestoreState(row[4]),
        options=json.loads(row[5]),
        created_at=row[6],
        activated_at=row[7],
        operation_id=row[8],
        owner_pid=row[9],
    )


def _row_to_operation(row: tuple) -> OperationRecord:
    return OperationRecord(
        id=row[0],
        name=row[1],
        asset_key=row[2],
        snapshot=row[3],
        started_at=row[4],
        completed_at=row[5],
        committed_stages=json.loads(row[6]) if row[6] else [],
        error=row[7],
    )


async def init_restore_db(db_path: Path) -> None:
    """
    Initialize the restore database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS restores (
                    asset_key TEXT NOT NULL,
                    snapshot INTEGER NOT NULL,
                    restore_type TEXT NOT NULL,
                    suffix TEXT NOT NULL,
                    state TEXT NOT NULL,
                    options TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    activated_at TEXT,
                    operation_id TEXT,
                    owner_pid INTEGER,
                    PRIMARY KEY (asset_key, snapshot, restore_type)
                )
            """)

            # Databases created before reservations recorded their owner
            async with db.execute("PRAGMA table_info(restores)") as cursor:
                columns = {row[1] for row in await cursor.fetchall()}
            for column, column_type in (("operation_id", "TEXT"), ("owner_pid", "INTEGER")):
                if column not in columns:
                    await db.execute(f"ALTER TABLE restores ADD COLUMN {column} {column_type}")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS operations (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    asset_key TEXT NOT NULL,
                    snapshot INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    committed_stages TEXT,
                    error TEXT
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_started_at
                ON operations(started_at)
            """)

            await db.commit()

        logger.info("restore_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise RestoreStoreError(
            f"Failed to initialize restore database: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def reserve_restore(db: aiosqlite.Connection, record: RestoreRecord) -> RestoreRecord:
    """
    Atomically claim the record's key with a pending row.

    Raises:
        RestoreExistsError: If a record with the same key already exists
    """
    now = datetime.now(UTC).isoformat()
    try:
        await db.execute(
            f"""
            INSERT INTO restores ({_RESTORE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """,
            (
                record.asset_key,
                record.snapshot,
                record.restore_type.value,
                record.suffix,
                RestoreState.PENDING.value,
                json.dumps(record.options),
                now,
                record.operation_id,
                record.owner_pid,
            ),
        )
        await db.commit()
    except sqlite3.IntegrityError as e:
        raise RestoreExistsError(
            explain_restore_exists(record.asset_key, record.snapshot, record.suffix),
            details={"restore_type": record.restore_type.value},
        ) from e

    record.state = RestoreState.PENDING
    record.created_at = now
    logger.debug(
        "restore_reserved",
        asset_key=record.asset_key,
        snapshot=record.snapshot,
        restore_type=record.restore_type.value,
    )
    return record


async def save_restore(db: aiosqlite.Connection, record: RestoreRecord) -> RestoreRecord:
    """
    Store the record as active, replacing a pending reservation.
    """
    now = datetime.now(UTC).isoformat()
    created_at = record.created_at or now

    await db.execute(
        f"""
        INSERT INTO restores ({_RESTORE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
        ON CONFLICT (asset_key, snapshot, restore_type) DO UPDATE SET
            suffix = excluded.suffix,
            state = excluded.state,
            options = excluded.options,
            activated_at = excluded.activated_at,
            operation_id = COALESCE(excluded.operation_id, restores.operation_id),
            owner_pid = NULL
        """,
        (
            record.asset_key,
            record.snapshot,
            record.restore_type.value,
            record.suffix,
            RestoreState.ACTIVE.value,
            json.dumps(record.options),
            created_at,
            now,
            record.operation_id,
        ),
    )
    await db.commit()

    record.state = RestoreState.ACTIVE
    record.created_at = created_at
    record.activated_at = now
    record.owner_pid = None
    logger.info(
        "restore_saved",
        asset_key=record.asset_key,
        snapshot=record.snapshot,
        restore_type=record.restore_type.value,
    )
    return record


async def find_restore(
    db: aiosqlite.Connection,
    asset_key: str,
    snapshot: int,
    restore_type: RestoreType,
) -> RestoreRecord | None:
    async with db.execute(
        f"""
        SELECT {_RESTORE_COLUMNS} FROM restores
        WHERE asset_key = ? AND snapshot = ? AND restore_type = ?
        """,
        (asset_key, snapshot, restore_type.value),
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_restore(row) if row else None


async def release_restore(
    db: aiosqlite.Connection,
    asset_key: str,
    snapshot: int,
    restore_type: RestoreType,
    operation_id: str | None = None,
) -> bool:
    """
    Drop a pending reservation. Active records are left untouched.

    Args:
        operation_id: Only release the reservation if this operation holds it

    Returns:
        True if a reservation was released
    """
    query = """
        DELETE FROM restores
        WHERE asset_key = ? AND snapshot = ? AND restore_type = ? AND state = ?
    """
    params: tuple = (asset_key, snapshot, restore_type.value, RestoreState.PENDING.value)
    if operation_id is not None:
        query += " AND operation_id = ?"
        params += (operation_id,)

    cursor = await db.execute(query, params)
    await db.commit()
    return cursor.rowcount > 0


async def take_over_reservation(
    db: aiosqlite.Connection,
    record: RestoreRecord,
    operation_id: str,
    owner_pid: int,
) -> bool:
    """
    Hand a pending reservation to a new operation.

    The update only matches while the row is still the reservation that
    was read, so of two processes reclaiming the same abandoned row only
    one succeeds.

    Returns:
        True if the reservation now belongs to operation_id
    """
    now = datetime.now(UTC).isoformat()
    cursor = await db.execute(
        """
        UPDATE restores
        SET operation_id = ?, owner_pid = ?, created_at = ?
        WHERE asset_key = ? AND snapshot = ? AND restore_type = ?
          AND state = ? AND created_at = ? AND operation_id IS ?
        """,
        (
            operation_id,
            owner_pid,
            now,
            record.asset_key,
            record.snapshot,
            record.restore_type.value,
            RestoreState.PENDING.value,
            record.created_at,
            record.operation_id,
        ),
    )
    await db.commit()
    if cursor.rowcount == 0:
        return False

    record.operation_id = operation_id
    record.owner_pid = owner_pid
    record.created_at = now
    return True


async def delete_restore(
    db: aiosqlite.Connection,
    asset_key: str,
    snapshot: int,
    restore_type: RestoreType,
) -> bool:
    """
    Returns:
        True if a record was deleted
    """
    cursor = await db.execute(
        """
        DELETE FROM restores
        WHERE asset_key = ? AND snapshot = ? AND restore_type = ?
        """,
        (asset_key, snapshot, restore_type.value),
    )
    await db.commit()
    return cursor.rowcount > 0


async def list_restores(
    db: aiosqlite.Connection,
    state: RestoreState | None = None,
) -> List[RestoreRecord]:
    query = f"SELECT {_RESTORE_COLUMNS} FROM restores"
    params: tuple = ()
    if state is not None:
        query += " WHERE state = ?"
        params = (state.value,)
    query += " ORDER BY created_at"

    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_restore(row) for row in rows]


async def record_operation(
    db: aiosqlite.Connection,
    operation_id: str,
    name: str,
    asset_key: str,
    snapshot: int,
) -> None:
    """
    Record the start of an operation.

    Args:
        db: SQLite database connection
        operation_id: Unique operation ID (ULID)
        name: Operation name, e.g. create or remove
        asset_key: Asset the operation acts on
        snapshot: Snapshot epoch
    """
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        INSERT INTO operations (id, name, asset_key, snapshot, started_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (operation_id, name, asset_key, snapshot, now),
    )
    await db.commit()

    logger.debug("operation_recorded", operation_id=operation_id, name=name)


async def complete_operation(
    db: aiosqlite.Connection,
    operation_id: str,
    committed_stages: List[str],
    error: str | None = None,
) -> None:
    """
    Mark an operation as completed.

    Args:
        db: SQLite database connection
        operation_id: Operation ID
        committed_stages: Names of the stages that committed
        error: Error message if the operation failed
    """
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        UPDATE operations
        SET completed_at = ?, committed_stages = ?, error = ?
        WHERE id = ?
        """,
        (now, json.dumps(committed_stages), error, operation_id),
    )
    await db.commit()


async def list_operations(
    db: aiosqlite.Connection,
    limit: int = 100,
) -> List[OperationRecord]:
    """List recent operations, newest first."""
    async with db.execute(
        """
        SELECT id, name, asset_key, snapshot, started_at, completed_at,
               committed_stages, error
        FROM operations
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        (limit,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_operation(row) for row in rows]


async def count_failed_operations(db: aiosqlite.Connection) -> int:
    async with db.execute(
        "SELECT COUNT(*) FROM operations WHERE error IS NOT NULL"
    ) as cursor:
        row = await cursor.fetchone()
    return row[0] if row else 0


class RestoreStore:
    """
    Restore-record store bound to one database file.

    Each call opens its own connection, so a store can be shared by
    concurrent requests and separate processes.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        await init_restore_db(self.db_path)

    async def find(
        self, asset_key: str, snapshot: int, restore_type: RestoreType
    ) -> RestoreRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            return await find_restore(db, asset_key, snapshot, restore_type)

    async def get(
        self, asset_key: str, snapshot: int, restore_type: RestoreType
    ) -> RestoreRecord:
        """
        Raises:
            RestoreNotFoundError: If no record exists
        """
        record = await self.find(asset_key, snapshot, restore_type)
        if record is None:
            raise RestoreNotFoundError(
                explain_restore_not_found(asset_key, snapshot, restore_type.value)
            )
        return record

    async def reserve(self, record: RestoreRecord) -> RestoreRecord:
        async with aiosqlite.connect(self.db_path) as db:
            return await reserve_restore(db, record)

    async def save(self, record: RestoreRecord) -> RestoreRecord:
        async with aiosqlite.connect(self.db_path) as db:
            return await save_restore(db, record)

    async def release(
        self,
        asset_key: str,
        snapshot: int,
        restore_type: RestoreType,
        operation_id: str | None = None,
    ) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            return await release_restore(db, asset_key, snapshot, restore_type, operation_id)

    async def take_over(
        self, record: RestoreRecord, operation_id: str, owner_pid: int
    ) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            return await take_over_reservation(db, record, operation_id, owner_pid)

    async def delete(self, record: RestoreRecord) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            return await delete_restore(
                db, record.asset_key, record.snapshot, record.restore_type
            )

    async def list(self, state: RestoreState | None = None) -> List[RestoreRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            return await list_restores(db, state)

    async def record_operation(
        self, operation_id: str, name: str, asset_key: str, snapshot: int
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await record_operation(db, operation_id, name, asset_key, snapshot)

    async def complete_operation(
        self,
        operation_id: str,
        committed_stages: List[str],
        error: str | None = None,
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await complete_operation(db, operation_id, committed_stages, error)

    async def list_operations(self, limit: int = 100) -> List[OperationRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            return await list_operations(db, limit)

    async def count_failed_operations(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            return await count_failed_operations(db)
