# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore data, crash recovery and removal tests.

These tests verify:
- get_restore_data() re-publishes a lost target from the surviving clone
- Loops are re-attached when they did not survive
- The original not-found error surfaces when nothing is left
- remove() and remove_all_for_point() tear everything down
"""

import asyncio

import pytest

from restorekit.exceptions import RestoreNotFoundError, TargetNotFoundError
from restorekit.restores.types import RestoreRecord, RestoreType
from restorekit.target.mercury import make_target_name

ASSET = "A1"
SNAPSHOT = 1000
SUFFIX = "diffrollback"
MOUNTPOINT = "/homePool/A1-1000-diffrollback"
VOLUMES = [
    "11111111-aaaa-4bbb-8ccc-000000000001",
    "22222222-aaaa-4bbb-8ccc-000000000002",
]


# ============================================================================
# Restore data
# ============================================================================


@pytest.mark.asyncio
async def test_restore_data_describes_target(service, targets):
    await service.create(ASSET, SNAPSHOT, SUFFIX)
    name = make_target_name(ASSET, SNAPSHOT, SUFFIX)

    data = await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)

    assert data["target"] == name
    assert data["password"] == targets.targets[name].password
    assert data["port"] == 3262
    assert data["luns"] == [
        {
            "id": 0,
            "uuid": VOLUMES[0],
            "path": f"{MOUNTPOINT}/{VOLUMES[0]}.datto",
            "blkid_uuid": "fs-loop0p1",
        },
        {
            "id": 1,
            "uuid": VOLUMES[1],
            "path": f"{MOUNTPOINT}/{VOLUMES[1]}.datto",
            "blkid_uuid": "fs-loop1p1",
        },
    ]


@pytest.mark.asyncio
async def test_restore_data_requires_record(service):
    with pytest.raises(RestoreNotFoundError):
        await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)


@pytest.mark.asyncio
async def test_pending_restore_is_not_served(service, store):
    """A reservation of a run still in progress has no connection data yet."""
    await store.reserve(
        RestoreRecord(
            asset_key=ASSET,
            snapshot=SNAPSHOT,
            restore_type=RestoreType.DIFFERENTIAL_ROLLBACK,
            suffix=SUFFIX,
        )
    )

    with pytest.raises(RestoreNotFoundError, match="still being provisioned"):
        await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)


@pytest.mark.asyncio
async def test_abandoned_restore_says_it_was_interrupted(service, store):
    """A reservation whose run died points the caller at create, not at waiting."""
    await store.reserve(
        RestoreRecord(
            asset_key=ASSET,
            snapshot=SNAPSHOT,
            restore_type=RestoreType.DIFFERENTIAL_ROLLBACK,
            suffix=SUFFIX,
        )
    )
    service.config = service.config.with_updates(reservation_ttl_seconds=0.001)
    await asyncio.sleep(0.01)

    with pytest.raises(RestoreNotFoundError, match="interrupted"):
        await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)


@pytest.mark.asyncio
async def test_dead_target_service_is_started(service, targets):
    await service.create(ASSET, SNAPSHOT, SUFFIX)
    targets.alive = False

    await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)

    assert targets.starts == 1
    assert await targets.is_alive()


# ============================================================================
# Crash recovery
# ============================================================================


@pytest.mark.asyncio
async def test_lost_target_is_republished_under_same_name(service, store, clones, targets, events):
    """
    The target service lost its targets while clone and loops survived:
    the same target name comes back with the same LUNs, without re-cloning.
    """
    await service.create(ASSET, SNAPSHOT, SUFFIX)
    name = make_target_name(ASSET, SNAPSHOT, SUFFIX)
    old_password = targets.targets[name].password
    targets.wipe()
    events.clear()

    data = await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)

    assert data["target"] == name
    assert targets.targets[name].luns == ["/dev/loop0p1", "/dev/loop1p1"]
    assert data["password"] == targets.targets[name].password
    assert data["password"] != old_password
    assert [lun["uuid"] for lun in data["luns"]] == VOLUMES

    assert events == ["target.create"]
    assert clones.created == ["homePool/A1-1000-diffrollback"]

    operation = (await store.list_operations())[0]
    assert operation["name"] == "reconcile"
    assert operation["committed_stages"] == ["create_target"]


@pytest.mark.asyncio
async def test_lost_loops_are_reattached(service, loops, targets, events):
    """After a reboot neither loops nor targets exist, but the clone does."""
    await service.create(ASSET, SNAPSHOT, SUFFIX)
    loops.reboot()
    targets.wipe()
    events.clear()

    data = await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)

    assert events == ["loops.attach", "target.create"]
    assert [lun["path"] for lun in data["luns"]] == [
        f"{MOUNTPOINT}/{volume}.datto" for volume in VOLUMES
    ]
    assert targets.targets[data["target"]].luns == ["/dev/loop2p1", "/dev/loop3p1"]


@pytest.mark.asyncio
async def test_lost_target_and_clone_reraises_not_found(service, clones, targets, events):
    """Nothing to rebuild from: the original error surfaces unchanged."""
    await service.create(ASSET, SNAPSHOT, SUFFIX)
    targets.wipe()
    clones.datasets.clear()
    events.clear()

    with pytest.raises(TargetNotFoundError) as exc_info:
        await service.get_restore_data(ASSET, SNAPSHOT, SUFFIX)

    assert exc_info.value.message == (
        f"Target {make_target_name(ASSET, SNAPSHOT, SUFFIX)} does not exist"
    )
    assert events == []


@pytest.mark.asyncio
async def test_names_recomputed_during_recovery_match(service):
    """Clone and target names derived later equal those used at creation."""
    record = await service.create(ASSET, SNAPSHOT, SUFFIX)
    spec = service.clone_spec(ASSET, SNAPSHOT, SUFFIX)

    assert spec.target_dataset == "homePool/A1-1000-diffrollback"
    assert spec.target_mountpoint == MOUNTPOINT
    assert record.target_name == make_target_name(ASSET, SNAPSHOT, SUFFIX)


# ============================================================================
# Removal
# ============================================================================


@pytest.mark.asyncio
async def test_remove_tears_everything_down(service, store, clones, loops, targets):
    await service.create(ASSET, SNAPSHOT, SUFFIX)

    await service.remove(ASSET, SNAPSHOT, SUFFIX)

    assert targets.targets == {}
    assert loops.table == {}
    assert clones.datasets == {}
    assert not await service.restore_exists(ASSET, SNAPSHOT, SUFFIX)

    operation = (await store.list_operations())[0]
    assert operation["name"] == "remove"
    assert operation["committed_stages"] == [
        "delete_target",
        "detach_loops",
        "destroy_clone",
        "delete_record",
    ]


@pytest.mark.asyncio
async def test_remove_tolerates_missing_target(service, targets):
    await service.create(ASSET, SNAPSHOT, SUFFIX)
    targets.wipe()

    await service.remove(ASSET, SNAPSHOT, SUFFIX)

    assert not await service.restore_exists(ASSET, SNAPSHOT, SUFFIX)


@pytest.mark.asyncio
async def test_remove_unknown_restore(service):
    with pytest.raises(RestoreNotFoundError):
        await service.remove(ASSET, SNAPSHOT, SUFFIX)


@pytest.mark.asyncio
async def test_remove_error_propagates(service, store, loops):
    """A failing step is raised straight away and recorded."""
    await service.create(ASSET, SNAPSHOT, SUFFIX)

    async def broken_detach(mountpoint):
        raise RuntimeError("device busy")

    loops.detach = broken_detach

    with pytest.raises(RuntimeError, match="device busy"):
        await service.remove(ASSET, SNAPSHOT, SUFFIX)

    assert await service.restore_exists(ASSET, SNAPSHOT, SUFFIX)
    operation = (await store.list_operations())[0]
    assert operation["committed_stages"] == ["delete_target"]
    assert operation["error"] == "device busy"


@pytest.mark.asyncio
async def test_remove_all_for_point(service, clones):
    """Every clone of the point whose suffix carries the type goes."""
    await service.create(ASSET, SNAPSHOT, "differential-rollback")
    await service.create("B2", SNAPSHOT, "differential-rollback")

    removed = await service.remove_all_for_point(
        ASSET, SNAPSHOT, RestoreType.DIFFERENTIAL_ROLLBACK
    )

    assert [spec.target_dataset for spec in removed] == [
        "homePool/A1-1000-differential-rollback"
    ]
    assert list(clones.datasets) == ["homePool/B2-1000-differential-rollback"]
    assert not await service.restore_exists(ASSET, SNAPSHOT, "differential-rollback")
    assert await service.restore_exists("B2", SNAPSHOT, "differential-rollback")


@pytest.mark.asyncio
async def test_list_restores(service):
    await service.create(ASSET, SNAPSHOT, SUFFIX)
    await service.create(ASSET, 2000, SUFFIX)

    restores = await service.list_restores()

    assert [(r.asset_key, r.snapshot) for r in restores] == [(ASSET, 1000), (ASSET, 2000)]
