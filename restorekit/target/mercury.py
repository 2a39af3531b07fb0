# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Network block-target service backed by mercuryftp.

Targets are managed through the ``mercuryftpctl`` control utility:

    mercuryftpctl list -p 3263
    mercuryftpctl add <target> <password> -p 3263
    mercuryftpctl add <target> <lun-index> <device> -p 3263
    mercuryftpctl del <target> -p 3263

``list`` prints JSON of the form
``{"<target>": {"password": "...", "luns": {"0": "/dev/loop3p1"}}}``.

The service keeps targets in memory only, so a crash of the service
wipes every target while the loops and clones behind them survive.
"""

import hashlib
import json
import re
import secrets
import string
from dataclasses import dataclass, field
from typing import Dict, List

import structlog

from restorekit.config import RestoreKitConfig
from restorekit.exceptions import CommandError, TargetError, TargetNotFoundError
from restorekit.system.commands import CommandRunner

logger = structlog.get_logger()


_PASSWORD_ALPHABET = string.ascii_letters + string.digits
_NAME_INVALID_RE = re.compile(r"[^a-z0-9.\-]+")
_NAME_DIGEST_LENGTH = 10


def generate_password(length: int) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def make_target_name(asset_key: str, snapshot: int | str, suffix: str) -> str:
    """
    Deterministic target name for a restore.

    The same (asset, snapshot, suffix) always yields the same name. The
    readable part is lowercased and sanitized, which folds e.g. ``Host1``
    and ``host1`` together, so a digest of the exact triple is appended
    to keep distinct restores on distinct names.
    """
    raw = f"restore-{asset_key}-{snapshot}-{suffix}".lower()
    readable = _NAME_INVALID_RE.sub("-", raw).strip("-")
    digest = hashlib.sha256(f"{asset_key}\0{snapshot}\0{suffix}".encode()).hexdigest()
    return f"{readable}-{digest[:_NAME_DIGEST_LENGTH]}"


@dataclass
class TargetInfo:
    """A published target and its LUNs ordered by index."""

    name: str
    password: str
    luns: List[str] = field(default_factory=list)


class MercuryTargetService:
    """Creates, inspects and deletes mercuryftp targets."""

    def __init__(self, runner: CommandRunner, config: RestoreKitConfig):
        self.runner = runner
        self.ctl = config.target_ctl
        self.ctl_port = config.target_ctl_port
        self.transfer_port = config.target_transfer_port
        self.service = config.target_service

    make_target_name = staticmethod(make_target_name)

    async def _control(self, *args: str | int, retry: bool = False) -> str:
        argv = [self.ctl, *[str(a) for a in args], "-p", str(self.ctl_port)]
        result = await self.runner.run(argv, retry=retry)
        return result.stdout

    async def is_alive(self) -> bool:
        result = await self.runner.run(
            ["systemctl", "is-active", "--quiet", self.service], check=False
        )
        return result.ok

    async def start_if_dead(self) -> bool:
        """
        Start the service when it is not running.

        Returns:
            True if the service had to be started

        Raises:
            TargetError: If the service cannot be started
        """
        if await self.is_alive():
            return False

        logger.warning("target_service_dead", service=self.service)
        try:
            await self.runner.run(["systemctl", "start", self.service])
        except CommandError as e:
            raise TargetError(f"Failed to start {self.service}", details={"error": str(e)}) from e

        logger.info("target_service_started", service=self.service)
        return True

    async def list_targets(self) -> Dict[str, TargetInfo]:
        output = (await self._control("list", retry=True)).strip()
        if not output:
            return {}

        try:
            raw = json.loads(output)
        except json.JSONDecodeError as e:
            raise TargetError(f"Unparseable {self.ctl} list output: {e}") from e

        targets: Dict[str, TargetInfo] = {}
        for name, info in (raw or {}).items():
            luns = info.get("luns") or {}
            ordered = [luns[k] for k in sorted(luns, key=int)]
            targets[name] = TargetInfo(
                name=name,
                password=info.get("password", ""),
                luns=ordered,
            )
        return targets

    async def get_target(self, name: str) -> TargetInfo:
        """
        Raises:
            TargetNotFoundError: If the target does not exist
        """
        targets = await self.list_targets()
        if name not in targets:
            raise TargetNotFoundError(f"Target {name} does not exist")
        return targets[name]

    async def create_target(self, name: str, luns: List[str], password: str) -> None:
        """
        Publish a target with one LUN per device, in order.

        A target that fails half-way is deleted again before raising.

        Raises:
            TargetError: If the target or one of its LUNs cannot be added
        """
        try:
            await self._control("add", name, password)
            for index, lun in enumerate(luns):
                await self._control("add", name, index, lun)
        except CommandError as e:
            logger.error("target_create_failed", target=name, error=str(e))
            try:
                await self._control("del", name)
            except CommandError as cleanup_error:
                logger.warning(
                    "target_partial_delete_failed",
                    target=name,
                    error=str(cleanup_error),
                )
            raise TargetError(f"Failed to create target {name}", details={"error": str(e)}) from e

        logger.info("target_created", target=name, luns=len(luns))

    async def delete_target(self, name: str) -> None:
        """
        Raises:
            TargetNotFoundError: If the target does not exist
            TargetError: If the target cannot be deleted
        """
        if name not in await self.list_targets():
            raise TargetNotFoundError(f"Target {name} does not exist")

        try:
            await self._control("del", name, retry=True)
        except CommandError as e:
            raise TargetError(f"Failed to delete target {name}", details={"error": str(e)}) from e

        logger.info("target_deleted", target=name)
