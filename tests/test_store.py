# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore store tests against a real SQLite database.
"""

import aiosqlite
import pytest
from ulid import ULID

from restorekit.exceptions import RestoreExistsError, RestoreNotFoundError, RestoreStoreError
from restorekit.restores.store import RestoreStore, init_restore_db
from restorekit.restores.types import (
    RestoreRecord,
    RestoreState,
    RestoreType,
    restore_type_for_suffix,
)


def _record(asset_key: str = "A1", snapshot: int = 1000, suffix: str = "differential-rollback"):
    return RestoreRecord(
        asset_key=asset_key,
        snapshot=snapshot,
        restore_type=restore_type_for_suffix(suffix),
        suffix=suffix,
        options={"fullSuffix": suffix},
    )


# ============================================================================
# Schema
# ============================================================================


@pytest.mark.asyncio
async def test_init_is_idempotent(temp_dir):
    db_path = temp_dir / "restores.db"
    await init_restore_db(db_path)
    await init_restore_db(db_path)

    async with aiosqlite.connect(db_path) as db:
        async with db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        ) as cursor:
            tables = [row[0] for row in await cursor.fetchall()]

    assert tables == ["operations", "restores"]


@pytest.mark.asyncio
async def test_init_failure_raises_store_error(temp_dir):
    with pytest.raises(RestoreStoreError):
        await init_restore_db(temp_dir / "missing" / "restores.db")


@pytest.mark.asyncio
async def test_init_adds_owner_columns_to_old_database(temp_dir):
    db_path = temp_dir / "restores.db"
    async with aiosqlite.connect(db_path) as db:
        await db.execute("""
            CREATE TABLE restores (
                asset_key TEXT NOT NULL,
                snapshot INTEGER NOT NULL,
                restore_type TEXT NOT NULL,
                suffix TEXT NOT NULL,
                state TEXT NOT NULL,
                options TEXT NOT NULL,
                created_at TEXT NOT NULL,
                activated_at TEXT,
                PRIMARY KEY (asset_key, snapshot, restore_type)
            )
        """)
        await db.execute(
            "INSERT INTO restores VALUES ('A1', 1000, 'differential-rollback', "
            "'differential-rollback', 'active', '{}', '2026-01-01T00:00:00+00:00', NULL)"
        )
        await db.commit()

    await init_restore_db(db_path)

    store = RestoreStore(db_path)
    found = await store.get("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert found.state == RestoreState.ACTIVE
    assert found.operation_id is None
    assert found.owner_pid is None


# ============================================================================
# Restore records
# ============================================================================


@pytest.mark.asyncio
async def test_reserve_then_save(store: RestoreStore):
    reserved = await store.reserve(_record())
    assert reserved.state == RestoreState.PENDING
    assert reserved.created_at is not None

    record = _record()
    record.options["target"] = "restore-a1-1000-differential-rollback"
    record.created_at = reserved.created_at
    saved = await store.save(record)

    found = await store.get("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert found.state == RestoreState.ACTIVE
    assert found.created_at == reserved.created_at
    assert found.activated_at == saved.activated_at
    assert found.target_name == "restore-a1-1000-differential-rollback"


@pytest.mark.asyncio
async def test_reserve_is_exclusive(store: RestoreStore):
    """Only one reservation per (asset, snapshot, type) succeeds."""
    await store.reserve(_record())

    with pytest.raises(RestoreExistsError):
        await store.reserve(_record(suffix="differential-rollback-2"))

    # Same point, different type
    await store.reserve(_record(suffix="bmr"))
    assert len(await store.list()) == 2


@pytest.mark.asyncio
async def test_release_only_drops_pending(store: RestoreStore):
    await store.reserve(_record())
    assert await store.release("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK) is None

    await store.save(_record())
    assert not await store.release("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK) is not None


@pytest.mark.asyncio
async def test_reservation_records_its_owner(store: RestoreStore):
    record = _record()
    record.operation_id = "01JOWNER000000000000000000"
    record.owner_pid = 4242
    await store.reserve(record)

    found = await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert found.operation_id == "01JOWNER000000000000000000"
    assert found.owner_pid == 4242

    saved = await store.save(_record())
    assert saved.owner_pid is None
    found = await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert found.operation_id == "01JOWNER000000000000000000"
    assert found.owner_pid is None


@pytest.mark.asyncio
async def test_release_of_other_operation_is_ignored(store: RestoreStore):
    record = _record()
    record.operation_id = "01JOWNER000000000000000000"
    await store.reserve(record)

    assert not await store.release(
        "A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK, operation_id="01JOTHER000000000000000000"
    )
    assert await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK) is not None

    assert await store.release(
        "A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK, operation_id="01JOWNER000000000000000000"
    )
    assert await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK) is None


@pytest.mark.asyncio
async def test_take_over_succeeds_once(store: RestoreStore):
    """Two reclaimers that read the same reservation: the second one loses."""
    record = _record()
    record.owner_pid = 1
    await store.reserve(record)

    first = await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    second = await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)

    assert await store.take_over(first, str(ULID()), 100)
    assert first.owner_pid == 100
    assert not await store.take_over(second, str(ULID()), 200)

    found = await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert found.operation_id == first.operation_id
    assert found.owner_pid == 100


@pytest.mark.asyncio
async def test_active_record_cannot_be_taken_over(store: RestoreStore):
    saved = await store.save(_record())

    assert not await store.take_over(saved, str(ULID()), 100)
    found = await store.find("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)
    assert found.state == RestoreState.ACTIVE


@pytest.mark.asyncio
async def test_delete_and_get(store: RestoreStore):
    record = await store.save(_record())

    assert await store.delete(record)
    assert not await store.delete(record)

    with pytest.raises(RestoreNotFoundError):
        await store.get("A1", 1000, RestoreType.DIFFERENTIAL_ROLLBACK)


@pytest.mark.asyncio
async def test_list_by_state(store: RestoreStore):
    await store.save(_record("A1"))
    await store.reserve(_record("B2"))

    assert [r.asset_key for r in await store.list(RestoreState.ACTIVE)] == ["A1"]
    assert [r.asset_key for r in await store.list(RestoreState.PENDING)] == ["B2"]
    assert [r.to_dict()["state"] for r in await store.list()] == ["active", "pending"]


# ============================================================================
# Operation audit trail
# ============================================================================


@pytest.mark.asyncio
async def test_operations_newest_first(store: RestoreStore):
    first, second = str(ULID()), str(ULID())
    await store.record_operation(first, "create", "A1", 1000)
    await store.complete_operation(first, ["UnsealAssetStage"], error="boom")
    await store.record_operation(second, "remove", "A1", 1000)

    operations = await store.list_operations()

    assert [op["id"] for op in operations] == [second, first]
    assert operations[0]["completed_at"] is None
    assert operations[0]["committed_stages"] == []
    assert operations[1]["committed_stages"] == ["UnsealAssetStage"]
    assert operations[1]["error"] == "boom"
    assert await store.count_failed_operations() == 1
    assert len(await store.list_operations(limit=1)) == 1


# ============================================================================
# Restore types
# ============================================================================


@pytest.mark.parametrize(
    "suffix,expected",
    [
        ("differential-rollback", RestoreType.DIFFERENTIAL_ROLLBACK),
        ("diffrollback", RestoreType.DIFFERENTIAL_ROLLBACK),
        ("bmr", RestoreType.BMR),
        ("bmr-0a1b", RestoreType.BMR),
        ("bmrx", RestoreType.DIFFERENTIAL_ROLLBACK),
    ],
)
def test_restore_type_for_suffix(suffix, expected):
    assert restore_type_for_suffix(suffix) == expected
