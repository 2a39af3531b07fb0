# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stages of the differential-rollback provisioning pipeline.

Committed in this order and rolled back in reverse:

1. UnsealAssetStage   - unlock the asset key of an encrypted asset
2. CreateCloneStage   - reserve the restore record, clone the snapshot
3. HideFilesStage     - hide auxiliary files inside the clone
4. AttachLoopsStage   - expose each image as a partitioned block device
5. CreateTargetStage  - publish the partitions as a network target
6. SaveRestoreStage   - persist the active restore record
"""

import os
from typing import List

import structlog

from restorekit.block.loops import LoopHelper
from restorekit.encryption import EncryptionService
from restorekit.errors import explain_missing_passphrase
from restorekit.exceptions import (
    PassphraseRequiredError,
    TargetError,
    TargetNotFoundError,
)
from restorekit.exclusion import FileExclusionService
from restorekit.restores.store import RestoreStore
from restorekit.restores.types import (
    FULL_SUFFIX_OPTION_KEY,
    TARGET_NAME_OPTION_KEY,
    RestoreRecord,
    RestoreState,
)
from restorekit.rollback.context import RestoreContext
from restorekit.storage.clones import CloneManager
from restorekit.target.mercury import (
    MercuryTargetService,
    generate_password,
    make_target_name,
)
from restorekit.transaction.stage import Stage

logger = structlog.get_logger()


class RestoreStage(Stage[RestoreContext]):
    """Base of the pipeline stages."""

    @property
    def ctx(self) -> RestoreContext:
        if self.context is None:
            raise RuntimeError(f"{self.name} has no context")
        return self.context

    def _log(self, event: str, **kwargs) -> None:
        request = self.ctx.request
        logger.info(
            event,
            stage=self.name,
            asset_key=request.asset_key,
            snapshot=request.snapshot,
            **kwargs,
        )


class UnsealAssetStage(RestoreStage):
    """
    Unlock the key of an encrypted asset.

    Nothing to do for plain assets, or while temporary access keeps the
    key unlocked. Rollback reseals only a key this stage unsealed.
    """

    def __init__(self, encryption: EncryptionService):
        super().__init__()
        self.encryption = encryption

    async def commit(self) -> None:
        request = self.ctx.request
        if not request.encrypted:
            return

        if await self.encryption.is_temp_access_enabled(request.asset_key):
            self._log("unseal_skipped_temp_access")
            return

        if not request.passphrase:
            raise PassphraseRequiredError(explain_missing_passphrase(request.asset_key))

        was_sealed = await self.encryption.is_sealed(request.asset_key)
        await self.encryption.unseal(request.asset_key, request.passphrase)
        self.ctx.unsealed = was_sealed
        self._log("asset_key_unlocked", was_sealed=was_sealed)

    async def rollback(self) -> None:
        if self.ctx.unsealed:
            await self.encryption.seal(self.ctx.request.asset_key)
            self.ctx.unsealed = False
            self._log("asset_resealed")


class CreateCloneStage(RestoreStage):
    """
    Reserve the restore record, then clone the snapshot.

    The reservation is an atomic insert, so of two concurrent requests
    for the same restore exactly one gets past this stage. A request that
    loses the race fails here without touching the other one's clone.
    The pending row names the operation and process holding it, which is
    how an abandoned reservation is recognized after a crash.
    """

    def __init__(self, clones: CloneManager, store: RestoreStore):
        super().__init__()
        self.clones = clones
        self.store = store

    async def commit(self) -> None:
        request = self.ctx.request

        await self.store.reserve(
            RestoreRecord(
                asset_key=request.asset_key,
                snapshot=request.snapshot,
                restore_type=request.restore_type,
                suffix=request.suffix,
                options={FULL_SUFFIX_OPTION_KEY: request.suffix},
                operation_id=self.ctx.operation_id,
                owner_pid=os.getpid(),
            )
        )
        self.ctx.reservation_held = True

        await self.clones.create(request.clone_spec)
        self.ctx.clone_created = True
        self._log("clone_ready", dataset=request.clone_spec.target_dataset)

    async def rollback(self) -> None:
        request = self.ctx.request
        try:
            if self.ctx.clone_created:
                await self.clones.destroy(request.clone_spec)
                self.ctx.clone_created = False
        finally:
            if self.ctx.reservation_held:
                await self.store.release(
                    request.asset_key,
                    request.snapshot,
                    request.restore_type,
                    operation_id=self.ctx.operation_id,
                )
                self.ctx.reservation_held = False


class HideFilesStage(RestoreStage):
    """Hide files matching the configured patterns inside the clone."""

    def __init__(self, exclusion: FileExclusionService, patterns: List[str]):
        super().__init__()
        self.exclusion = exclusion
        self.patterns = list(patterns)

    async def commit(self) -> None:
        self.ctx.hidden_files = await self.exclusion.hide(self.ctx.mountpoint, self.patterns)
        if self.ctx.hidden_files:
            self._log("clone_files_hidden", count=len(self.ctx.hidden_files))

    async def rollback(self) -> None:
        if self.ctx.hidden_files:
            await self.exclusion.unhide(self.ctx.mountpoint)
            self.ctx.hidden_files = []


class AttachLoopsStage(RestoreStage):
    """Attach a loop device per image and record the partition-1 LUN paths."""

    def __init__(self, loops: LoopHelper):
        super().__init__()
        self.loops = loops

    async def commit(self) -> None:
        request = self.ctx.request
        self.ctx.loops = await self.loops.attach(
            request.asset_key, self.ctx.mountpoint, request.encrypted
        )
        self.ctx.lun_paths = [
            self.ctx.loops[volume].partition_path(1) for volume in sorted(self.ctx.loops)
        ]
        self._log("loops_attached", volumes=sorted(self.ctx.loops))

    async def rollback(self) -> None:
        # Detach by mountpoint so loops of a half-finished attach go too
        await self.loops.detach(self.ctx.mountpoint)
        self.ctx.loops = {}
        self.ctx.lun_paths = []


class CreateTargetStage(RestoreStage):
    """Publish the attached partitions as a password-protected target."""

    def __init__(
        self,
        targets: MercuryTargetService,
        store: RestoreStore,
        password_length: int = 32,
    ):
        super().__init__()
        self.targets = targets
        self.store = store
        self.password_length = password_length

    async def commit(self) -> None:
        request = self.ctx.request
        if not self.ctx.lun_paths:
            raise TargetError(f"No LUNs to publish for {request.asset_key}@{request.snapshot}")

        name = make_target_name(request.asset_key, request.snapshot, request.suffix)

        for restore in await self.store.list(RestoreState.ACTIVE):
            if restore.target_name == name:
                raise TargetError(
                    f"Target {name} already serves {restore.asset_key}@{restore.snapshot}",
                    details={"suffix": restore.suffix},
                )

        # Not named by any active restore, so left over from a crashed run
        try:
            await self.targets.delete_target(name)
            self._log("stale_target_removed", target=name)
        except TargetNotFoundError:
            pass

        password = generate_password(self.password_length)
        await self.targets.create_target(name, self.ctx.lun_paths, password)
        self.ctx.target_name = name
        self.ctx.target_password = password
        self._log("target_published", target=name, luns=len(self.ctx.lun_paths))

    async def rollback(self) -> None:
        if self.ctx.target_name is None:
            return
        try:
            await self.targets.delete_target(self.ctx.target_name)
        except TargetNotFoundError:
            logger.warning("target_already_gone", target=self.ctx.target_name)
        self.ctx.target_name = None
        self.ctx.target_password = None


class SaveRestoreStage(RestoreStage):
    """Activate the restore record. Last stage; nothing to roll back."""

    def __init__(self, store: RestoreStore):
        super().__init__()
        self.store = store

    async def commit(self) -> None:
        request = self.ctx.request
        record = RestoreRecord(
            asset_key=request.asset_key,
            snapshot=request.snapshot,
            restore_type=request.restore_type,
            suffix=request.suffix,
            options={
                TARGET_NAME_OPTION_KEY: self.ctx.target_name,
                FULL_SUFFIX_OPTION_KEY: request.suffix,
            },
            operation_id=self.ctx.operation_id,
        )
        self.ctx.restore = await self.store.save(record)
        self._log("restore_record_saved", target=self.ctx.target_name)

    async def rollback(self) -> None:
        pass
