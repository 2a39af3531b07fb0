# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
File-exclusion helper - hides files of a clone from remote initiators.

Matching files are moved into ``<mountpoint>/.restorekit-hidden/`` and
moved back by unhide(). Only the top level of the mountpoint is
considered; patterns are shell globs such as ``*.vmdk``.
"""

from pathlib import Path
from typing import List

import aiofiles.os
import structlog

from restorekit.exceptions import ExclusionError

logger = structlog.get_logger()


HIDDEN_DIR_NAME = ".restorekit-hidden"


class FileExclusionService:
    """Moves files in and out of a clone's hidden directory."""

    async def hide(self, mountpoint: str, patterns: List[str]) -> List[str]:
        """
        Hide every top-level file of the mountpoint matching a pattern.

        Args:
            mountpoint: Clone mountpoint
            patterns: Glob patterns

        Returns:
            Names of the files that were hidden

        Raises:
            ExclusionError: If the mountpoint is missing or a move fails
        """
        root = Path(mountpoint)
        if not await aiofiles.os.path.isdir(root):
            raise ExclusionError(f"Mountpoint {mountpoint} does not exist")

        matches = sorted(
            {p for pattern in patterns for p in root.glob(pattern) if p.is_file()}
        )
        if not matches:
            return []

        hidden_dir = root / HIDDEN_DIR_NAME
        await aiofiles.os.makedirs(hidden_dir, exist_ok=True)

        hidden: List[str] = []
        for path in matches:
            try:
                await aiofiles.os.rename(path, hidden_dir / path.name)
            except OSError as e:
                raise ExclusionError(
                    f"Failed to hide {path.name}",
                    details={"mountpoint": mountpoint, "hidden": hidden, "error": str(e)},
                ) from e
            hidden.append(path.name)

        logger.info("files_hidden", mountpoint=mountpoint, count=len(hidden))
        return hidden

    async def unhide(self, mountpoint: str) -> List[str]:
        """
        Move every hidden file back to the top of the mountpoint.

        Returns:
            Names of the files restored
        """
        root = Path(mountpoint)
        hidden_dir = root / HIDDEN_DIR_NAME
        if not await aiofiles.os.path.isdir(hidden_dir):
            return []

        restored: List[str] = []
        for name in sorted(await aiofiles.os.listdir(hidden_dir)):
            try:
                await aiofiles.os.rename(hidden_dir / name, root / name)
            except OSError as e:
                raise ExclusionError(
                    f"Failed to restore hidden file {name}",
                    details={"mountpoint": mountpoint, "error": str(e)},
                ) from e
            restored.append(name)

        await aiofiles.os.rmdir(hidden_dir)
        logger.info("files_unhidden", mountpoint=mountpoint, count=len(restored))
        return restored
