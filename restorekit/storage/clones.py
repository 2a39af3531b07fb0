# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Clone manager - creates and destroys ZFS clones of asset snapshots.
"""

from typing import List

import structlog

from restorekit.config import RestoreKitConfig
from restorekit.exceptions import CloneError, CommandError
from restorekit.storage.clone_spec import CloneSpec
from restorekit.system.commands import CommandRunner

logger = structlog.get_logger()


class CloneManager:
    """Thin async wrapper around the ``zfs`` utility."""

    def __init__(self, runner: CommandRunner, config: RestoreKitConfig):
        self.runner = runner
        self.config = config

    async def exists(self, spec: CloneSpec) -> bool:
        result = await self.runner.run(
            ["zfs", "list", "-H", "-o", "name", spec.target_dataset],
            check=False,
        )
        return result.ok

    async def create(self, spec: CloneSpec) -> None:
        """
        Clone the snapshot described by ``spec``.

        An existing dataset with the same name is reused, so calling this
        twice for the same spec has the effect of calling it once.

        Raises:
            CloneError: If the clone cannot be created
        """
        if await self.exists(spec):
            logger.debug("clone_already_exists", dataset=spec.target_dataset)
            return

        args = ["zfs", "clone"]
        if spec.target_mountpoint:
            args += ["-o", f"mountpoint={spec.target_mountpoint}"]
        if spec.sync is not None:
            args += ["-o", f"sync={'always' if spec.sync else 'standard'}"]
        args += [spec.clone_source, spec.target_dataset]

        try:
            await self.runner.run(args)
        except CommandError as e:
            logger.error(
                "clone_create_failed",
                source=spec.clone_source,
                dataset=spec.target_dataset,
                error=str(e),
            )
            raise CloneError(
                f"Failed to clone {spec.clone_source}",
                details={"dataset": spec.target_dataset, "stderr": e.stderr.strip()},
            ) from e

        logger.info("clone_created", source=spec.clone_source, dataset=spec.target_dataset)

    async def destroy(self, spec: CloneSpec, recursive: bool = False) -> None:
        """
        Destroy the clone named by ``spec``. A missing dataset is logged and ignored.

        Raises:
            CloneError: If the dataset exists but cannot be destroyed
        """
        if not await self.exists(spec):
            logger.warning("clone_not_found", dataset=spec.target_dataset)
            return

        args = ["zfs", "destroy"]
        if recursive:
            args.append("-r")
        args.append(spec.target_dataset)

        try:
            # Busy datasets usually free up after a moment
            await self.runner.run(args, retry=True)
        except CommandError as e:
            raise CloneError(
                f"Failed to destroy dataset: {spec.target_dataset}",
                details={"stderr": e.stderr.strip()},
            ) from e

        logger.info("clone_destroyed", dataset=spec.target_dataset)

    async def list_all(self) -> List[CloneSpec]:
        """List every restore clone in the pool."""
        result = await self.runner.run(
            ["zfs", "list", "-H", "-t", "filesystem,volume", "-o", "name,origin,mountpoint"]
        )

        specs: List[CloneSpec] = []
        for line in result.lines():
            fields = line.split("\t")
            if len(fields) != 3:
                continue
            name, origin, mountpoint = fields
            spec = CloneSpec.from_zfs_dataset_attributes(
                name,
                origin,
                mountpoint,
                clone_pool=self.config.clone_pool,
                agent_base=self.config.agent_base,
                share_base=self.config.share_base,
            )
            if spec is not None:
                specs.append(spec)
        return specs
