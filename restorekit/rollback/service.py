# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Differential rollback service - provisions, exposes and tears down
differential-rollback restore targets.

create() runs the provisioning pipeline as one stop-on-failure
transaction, so a failure leaves nothing half-provisioned behind.

get_restore_data() is the read path and also repairs the most common
crash: the target service lost its in-memory targets while the clone and
its loop devices survived. Because the clone mountpoint and the target
name are pure functions of (asset, snapshot, suffix), the LUNs can be
re-derived from the loop table and the target re-published under the
same name without re-running any other stage.
"""

import os
from datetime import UTC, datetime
from typing import Any, Dict, List

import structlog
from ulid import ULID

from restorekit.block.loops import LoopHelper, volume_id
from restorekit.config import RestoreKitConfig
from restorekit.encryption import EncryptionService
from restorekit.errors import (
    explain_abandoned_reservation,
    explain_missing_passphrase,
    explain_restore_exists,
)
from restorekit.exceptions import (
    PassphraseRequiredError,
    RestoreExistsError,
    RestoreNotFoundError,
    TargetNotFoundError,
)
from restorekit.exclusion import FileExclusionService
from restorekit.restores.store import RestoreStore
from restorekit.restores.types import (
    TARGET_NAME_OPTION_KEY,
    RestoreRecord,
    RestoreState,
    RestoreType,
    restore_type_for_suffix,
)
from restorekit.rollback.context import RestoreContext, RestoreRequest
from restorekit.rollback.stages import (
    AttachLoopsStage,
    CreateCloneStage,
    CreateTargetStage,
    HideFilesStage,
    SaveRestoreStage,
    UnsealAssetStage,
)
from restorekit.storage.clone_spec import CloneSpec
from restorekit.storage.clones import CloneManager
from restorekit.target.mercury import (
    MercuryTargetService,
    TargetInfo,
    generate_password,
    make_target_name,
)
from restorekit.transaction.stage import FailureType
from restorekit.transaction.transaction import Transaction

logger = structlog.get_logger()


class DifferentialRollbackService:
    """Entry point for differential-rollback restores."""

    def __init__(
        self,
        config: RestoreKitConfig,
        store: RestoreStore,
        clones: CloneManager,
        encryption: EncryptionService,
        loops: LoopHelper,
        targets: MercuryTargetService,
        exclusion: FileExclusionService,
    ):
        self.config = config
        self.store = store
        self.clones = clones
        self.encryption = encryption
        self.loops = loops
        self.targets = targets
        self.exclusion = exclusion

    def clone_spec(self, asset_key: str, snapshot: int, suffix: str) -> CloneSpec:
        return CloneSpec.for_agent(
            asset_key,
            snapshot,
            suffix,
            clone_pool=self.config.clone_pool,
            agent_base=self.config.agent_base,
        )

    def build_transaction(self, context: RestoreContext) -> Transaction[RestoreContext]:
        """Provisioning pipeline for one request."""
        transaction: Transaction[RestoreContext] = Transaction(
            FailureType.STOP_ON_FAILURE,
            context=context,
            name="differential_rollback_create",
        )
        context.operation_id = transaction.operation_id
        return (
            transaction.add(UnsealAssetStage(self.encryption))
            .add(CreateCloneStage(self.clones, self.store))
            .add(HideFilesStage(self.exclusion, self.config.hidden_file_patterns))
            .add(AttachLoopsStage(self.loops))
            .add(
                CreateTargetStage(
                    self.targets, self.store, self.config.target_password_length
                )
            )
            .add(SaveRestoreStage(self.store))
        )

    async def create(
        self,
        asset_key: str,
        snapshot: int,
        suffix: str,
        passphrase: str | None = None,
    ) -> RestoreRecord:
        """
        Provision a differential-rollback target.

        Args:
            asset_key: Asset to restore
            snapshot: Snapshot epoch
            suffix: Clone suffix, e.g. ``differential-rollback``
            passphrase: Required for encrypted assets without temp access

        Returns:
            The saved, active RestoreRecord

        Raises:
            RestoreExistsError: A restore for this asset/snapshot/type exists
            PassphraseRequiredError: Encrypted asset and no passphrase
            TransactionFailedError: A stage failed; everything was rolled back
        """
        logger.info(
            "differential_rollback_create_started",
            asset_key=asset_key,
            snapshot=snapshot,
            suffix=suffix,
        )

        restore_type = restore_type_for_suffix(suffix)

        # Fast rejection; the reservation in CreateCloneStage is what closes the race
        if await self.restore_exists(asset_key, snapshot, suffix) and not (
            await self.reclaim_abandoned(asset_key, snapshot, suffix)
        ):
            raise RestoreExistsError(
                explain_restore_exists(asset_key, snapshot, suffix),
                details={"restore_type": restore_type.value},
            )

        encrypted = await self.encryption.is_encrypted(asset_key)
        if (
            encrypted
            and not await self.encryption.is_temp_access_enabled(asset_key)
            and not passphrase
        ):
            raise PassphraseRequiredError(explain_missing_passphrase(asset_key))

        context = RestoreContext(
            request=RestoreRequest(
                asset_key=asset_key,
                snapshot=snapshot,
                suffix=suffix,
                clone_spec=self.clone_spec(asset_key, snapshot, suffix),
                restore_type=restore_type,
                encrypted=encrypted,
                passphrase=passphrase,
            )
        )

        transaction = self.build_transaction(context)
        await self.store.record_operation(transaction.operation_id, "create", asset_key, snapshot)

        try:
            await transaction.commit()
        except Exception as e:
            await self.store.complete_operation(
                transaction.operation_id,
                self._committed_names(transaction),
                error=str(e),
            )
            raise

        await self.store.complete_operation(
            transaction.operation_id, self._committed_names(transaction)
        )

        logger.info(
            "differential_rollback_created",
            asset_key=asset_key,
            snapshot=snapshot,
            suffix=suffix,
            target=context.target_name,
            operation_id=transaction.operation_id,
        )
        return context.restore  # type: ignore[return-value]

    @staticmethod
    def _committed_names(transaction: Transaction) -> List[str]:
        # committed_stages is most-recent-first
        return [stage.name for stage in reversed(transaction.committed_stages)]

    async def remove(self, asset_key: str, snapshot: int, suffix: str) -> None:
        """
        Tear down a differential-rollback target.

        Steps run in order and any error is raised straight away; a
        partially removed restore is left for the operator to retry.

        Raises:
            RestoreNotFoundError: If no restore exists
        """
        logger.info(
            "differential_rollback_remove_started",
            asset_key=asset_key,
            snapshot=snapshot,
            suffix=suffix,
        )

        restore_type = restore_type_for_suffix(suffix)
        restore = await self.store.get(asset_key, snapshot, restore_type)

        operation_id = str(ULID())
        await self.store.record_operation(operation_id, "remove", asset_key, snapshot)
        done: List[str] = []

        try:
            target_name = restore.target_name or make_target_name(asset_key, snapshot, suffix)
            try:
                await self.targets.delete_target(target_name)
            except TargetNotFoundError:
                logger.warning("target_already_gone", target=target_name)
            done.append("delete_target")

            spec = self.clone_spec(asset_key, snapshot, suffix)
            await self.loops.detach(spec.target_mountpoint)
            done.append("detach_loops")

            await self.clones.destroy(spec)
            done.append("destroy_clone")

            await self.store.delete(restore)
            done.append("delete_record")
        except Exception as e:
            await self.store.complete_operation(operation_id, done, error=str(e))
            raise

        await self.store.complete_operation(operation_id, done)
        logger.info(
            "differential_rollback_removed",
            asset_key=asset_key,
            snapshot=snapshot,
            suffix=suffix,
        )

    async def remove_all_for_point(
        self,
        asset_key: str,
        snapshot: int,
        restore_type: RestoreType,
    ) -> List[CloneSpec]:
        """
        Destroy every clone of the asset at this point whose suffix
        contains the restore type, together with the matching record.

        Returns:
            The clones that were destroyed
        """
        removed: List[CloneSpec] = []
        for spec in await self.clones.list_all():
            if (
                spec.asset_key == asset_key
                and spec.snapshot_name == str(snapshot)
                and restore_type.value in spec.suffix
            ):
                if spec.target_mountpoint:
                    await self.loops.detach(spec.target_mountpoint)
                await self.clones.destroy(spec)
                removed.append(spec)

        if removed:
            record = await self.store.find(asset_key, snapshot, restore_type)
            if record is not None:
                await self.store.delete(record)

        logger.info(
            "restores_removed_for_point",
            asset_key=asset_key,
            snapshot=snapshot,
            restore_type=restore_type.value,
            clones=len(removed),
        )
        return removed

    def is_abandoned(self, record: RestoreRecord) -> bool:
        """
        Whether a pending reservation was left behind by a crashed run.

        It is abandoned when its owner process is gone, or when it is
        older than the configured reservation TTL.
        """
        if record.state != RestoreState.PENDING:
            return False
        if record.owner_pid is not None and not _process_alive(record.owner_pid):
            return True
        if record.created_at is None:
            return True
        age = datetime.now(UTC) - datetime.fromisoformat(record.created_at)
        return age.total_seconds() > self.config.reservation_ttl_seconds

    async def reclaim_abandoned(self, asset_key: str, snapshot: int, suffix: str) -> bool:
        """
        Tear down what a crashed run provisioned and drop its reservation.

        Returns:
            True if no record is left for the restore; False if the
            record is active, or pending and still owned by a live run
        """
        restore_type = restore_type_for_suffix(suffix)
        record = await self.store.find(asset_key, snapshot, restore_type)
        if record is None:
            return True
        if not self.is_abandoned(record):
            return False

        operation_id = str(ULID())
        previous_operation = record.operation_id
        previous_pid = record.owner_pid
        if not await self.store.take_over(record, operation_id, os.getpid()):
            # Another process got to it first
            return False

        logger.warning(
            "abandoned_reservation_reclaiming",
            asset_key=asset_key,
            snapshot=snapshot,
            suffix=suffix,
            previous_operation=previous_operation,
            previous_pid=previous_pid,
            operation_id=operation_id,
        )

        await self.store.record_operation(operation_id, "reclaim", asset_key, snapshot)
        done: List[str] = []

        try:
            target_name = make_target_name(asset_key, snapshot, suffix)
            try:
                await self.targets.delete_target(target_name)
            except TargetNotFoundError:
                pass
            done.append("delete_target")

            spec = self.clone_spec(asset_key, snapshot, suffix)
            await self.loops.detach(spec.target_mountpoint)
            done.append("detach_loops")

            await self.clones.destroy(spec)
            done.append("destroy_clone")

            await self.store.release(asset_key, snapshot, restore_type, operation_id=operation_id)
            done.append("release_reservation")
        except Exception as e:
            await self.store.complete_operation(operation_id, done, error=str(e))
            raise

        await self.store.complete_operation(operation_id, done)
        logger.info(
            "abandoned_reservation_reclaimed",
            asset_key=asset_key,
            snapshot=snapshot,
            suffix=suffix,
        )
        return True

    async def restore_exists(self, asset_key: str, snapshot: int, suffix: str) -> bool:
        restore_type = restore_type_for_suffix(suffix)
        return await self.store.find(asset_key, snapshot, restore_type) is not None

    async def list_restores(self) -> List[RestoreRecord]:
        return await self.store.list()

    async def get_restore_data(self, asset_key: str, snapshot: int, suffix: str) -> Dict[str, Any]:
        """
        Connection data of a provisioned restore, repairing a lost target.

        Returns:
            ``{target, password, port, luns: [{id, uuid, path, blkid_uuid}]}``

        Raises:
            RestoreNotFoundError: No active restore exists
            TargetNotFoundError: The target is gone and so is the clone
        """
        await self.targets.start_if_dead()

        restore_type = restore_type_for_suffix(suffix)
        restore = await self.store.get(asset_key, snapshot, restore_type)
        if restore.state != RestoreState.ACTIVE:
            message = f"Restore for {asset_key}@{snapshot} is still being provisioned"
            if self.is_abandoned(restore):
                message = explain_abandoned_reservation(asset_key, snapshot, suffix)
            raise RestoreNotFoundError(
                message,
                details={"restore_type": restore_type.value},
            )

        target_name = restore.options.get(TARGET_NAME_OPTION_KEY) or make_target_name(
            asset_key, snapshot, suffix
        )

        try:
            target = await self.targets.get_target(target_name)
        except TargetNotFoundError:
            spec = self.clone_spec(asset_key, snapshot, suffix)
            if not await self.clones.exists(spec):
                logger.error(
                    "restore_unrecoverable",
                    asset_key=asset_key,
                    snapshot=snapshot,
                    target=target_name,
                )
                raise
            target = await self._recreate_target(asset_key, snapshot, target_name, spec)

        return await self._describe_target(target)

    async def _recreate_target(
        self,
        asset_key: str,
        snapshot: int,
        name: str,
        spec: CloneSpec,
    ) -> TargetInfo:
        lun_paths = await self.get_lun_paths(spec)

        if not lun_paths:
            # Loops do not survive a reboot; the clone does
            logger.warning("loops_reattaching", asset_key=asset_key, snapshot=snapshot)
            encrypted = await self.encryption.is_encrypted(asset_key)
            await self.loops.attach(asset_key, spec.target_mountpoint, encrypted)
            lun_paths = await self.get_lun_paths(spec)

        logger.warning(
            "target_recreating",
            asset_key=asset_key,
            snapshot=snapshot,
            target=name,
            luns=len(lun_paths),
        )

        operation_id = str(ULID())
        await self.store.record_operation(operation_id, "reconcile", asset_key, snapshot)
        try:
            password = generate_password(self.config.target_password_length)
            await self.targets.create_target(name, lun_paths, password)
            target = await self.targets.get_target(name)
        except Exception as e:
            await self.store.complete_operation(operation_id, [], error=str(e))
            raise

        await self.store.complete_operation(operation_id, ["create_target"])
        return target

    async def get_lun_paths(self, spec: CloneSpec) -> List[str]:
        """Partition-1 paths of the loops exposing the clone's images."""
        exposed = await self.loops.find_exposed_loops(spec.target_mountpoint)
        return [exposed[volume].partition_path(1) for volume in sorted(exposed)]

    async def _describe_target(self, target: TargetInfo) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "target": target.name,
            "password": target.password,
            "port": self.config.target_transfer_port,
            "luns": [],
        }

        loops = await self.loops.list_loops()
        by_path = {loop.path: loop for loop in loops}

        for index, partition in enumerate(target.luns):
            # /dev/loop3p1 -> /dev/loop3
            block_device = partition[:-2]
            loop = by_path.get(block_device)
            backing = loop.backing_file if loop else ""

            if backing and volume_id(backing) is None:
                backing = await self.loops.resolve_image_path(backing, loops) or ""

            data["luns"].append(
                {
                    "id": index,
                    "uuid": volume_id(backing) or "",
                    "path": backing,
                    "blkid_uuid": await self.loops.partition_uuid(partition),
                }
            )

        return data


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True
