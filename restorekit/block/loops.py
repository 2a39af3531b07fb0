# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Loop-device helper - exposes image files in a clone as block devices.

Plain assets store one ``<volume>.datto`` image per volume; each gets a
partition-scanning loop device. Encrypted assets store ``<volume>.detto``
images instead, which are layered as:

    <volume>.detto -> /dev/loopN (raw) -> /dev/mapper/<volume>-crypt-<rand>
                   -> /dev/loopM (partscan, exposed)

Nothing is remembered between calls: which loops belong to a clone is
always re-derived from the kernel's loop table by backing file, so the
same queries work after a crash.
"""

import json
import os
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import structlog

from restorekit.encryption import EncryptionService
from restorekit.exceptions import CommandError, LoopDeviceError
from restorekit.system.commands import CommandRunner

logger = structlog.get_logger()


PLAIN_EXTENSION = ".datto"
ENCRYPTED_EXTENSION = ".detto"

_IMAGE_RE = re.compile(r"^(?P<uuid>[A-Za-z0-9\-]+)\.d[ae]tto$")
_DEPS_RE = re.compile(r"\(([^)]+)\)")
_CRYPT_NAME_RE = re.compile(r"^[A-Za-z0-9\-]+-crypt-[0-9a-f]+$")


def volume_id(image_path: str) -> str | None:
    """Volume identifier of an image file, or None if it is not an image."""
    match = _IMAGE_RE.match(os.path.basename(image_path))
    return match.group("uuid") if match else None


def _is_mapper(path: str) -> bool:
    return path.startswith("/dev/mapper/")


def _lies_under(path: str, mountpoint: str) -> bool:
    return os.path.dirname(path) == mountpoint.rstrip("/")


@dataclass(frozen=True)
class LoopInfo:
    """A loop device and the file or device backing it."""

    path: str
    backing_file: str

    def partition_path(self, number: int = 1) -> str:
        return f"{self.path}p{number}"


class LoopHelper:
    """Attach and detach the loop devices of a clone."""

    def __init__(self, runner: CommandRunner, encryption: EncryptionService):
        self.runner = runner
        self.encryption = encryption

    async def list_loops(self) -> List[LoopInfo]:
        """Every loop device currently attached on the host."""
        result = await self.runner.run(
            ["losetup", "--list", "--json", "--output", "NAME,BACK-FILE"]
        )
        if not result.stdout.strip():
            return []

        try:
            devices = json.loads(result.stdout).get("loopdevices", [])
        except json.JSONDecodeError as e:
            raise LoopDeviceError(f"Unparseable losetup output: {e}") from e

        loops = []
        for device in devices:
            backing = (device.get("back-file") or "").removesuffix(" (deleted)")
            loops.append(LoopInfo(path=device["name"], backing_file=backing))
        return loops

    async def loop_info(self, path: str) -> LoopInfo:
        for loop in await self.list_loops():
            if loop.path == path:
                return loop
        raise LoopDeviceError(f"Loop device {path} is not attached")

    async def attach(
        self,
        asset_key: str,
        mountpoint: str,
        encrypted: bool,
    ) -> Dict[str, LoopInfo]:
        """
        Attach a loop device for every image in the clone mountpoint.

        Args:
            asset_key: Asset whose key decrypts ``.detto`` images
            mountpoint: Clone mountpoint holding the images
            encrypted: Layer dm-crypt between the image and the exposed loop

        Returns:
            Volume id -> exposed, partition-scanned LoopInfo

        Raises:
            LoopDeviceError: If the clone has no images or a device
                cannot be set up; already attached devices are left for
                detach() to clean up
        """
        extension = ENCRYPTED_EXTENSION if encrypted else PLAIN_EXTENSION
        images = sorted(str(p) for p in Path(mountpoint).glob(f"*{extension}"))
        if not images:
            raise LoopDeviceError(
                f"No {extension} images found in {mountpoint}",
                details={"asset_key": asset_key},
            )

        key = await self.encryption.get_crypt_key(asset_key) if encrypted else None

        loops: Dict[str, LoopInfo] = {}
        try:
            for image in images:
                volume = volume_id(image)
                if volume is None:
                    logger.warning("image_name_unrecognized", image=image)
                    continue

                device = image
                if key is not None:
                    device = await self._attach_crypt(image, volume, key)

                loops[volume] = await self._attach_loop(device, partscan=True)
                logger.info(
                    "loop_attached",
                    asset_key=asset_key,
                    volume=volume,
                    loop=loops[volume].path,
                )
        except CommandError as e:
            raise LoopDeviceError(
                f"Failed to attach loops for {mountpoint}",
                details={"asset_key": asset_key, "error": str(e)},
            ) from e

        await self.runner.run(["udevadm", "settle"], check=False)
        return loops

    async def _attach_loop(self, path: str, partscan: bool = False) -> LoopInfo:
        args = ["losetup", "--find", "--show"]
        if partscan:
            args.append("--partscan")
        args.append(path)

        # losetup --find races other attachers for the free device
        result = await self.runner.run(args, retry=True)
        return LoopInfo(path=result.stdout.strip(), backing_file=path)

    async def _attach_crypt(self, image: str, volume: str, key: str) -> str:
        raw = await self._attach_loop(image)
        size = (await self.runner.run(["blockdev", "--getsz", raw.path])).stdout.strip()

        name = f"{volume}-crypt-{secrets.token_hex(4)}"
        table = f"0 {size} crypt aes-xts-plain64 {key} 0 {raw.path} 0\n"

        try:
            # Table goes through stdin so the key never shows up in argv
            await self.runner.run(["dmsetup", "create", name], input=table)
        except CommandError:
            await self.runner.run(["losetup", "--detach", raw.path], check=False)
            raise

        logger.debug("crypt_device_created", volume=volume, device=name)
        return f"/dev/mapper/{name}"

    async def _mapper_deps(self, name: str) -> List[str] | None:
        """Device paths under a device-mapper device, or None if unknown."""
        result = await self.runner.run(
            ["dmsetup", "deps", "-o", "devname", name],
            check=False,
        )
        if not result.ok:
            return None
        return [f"/dev/{dep}" for dep in _DEPS_RE.findall(result.stdout)]

    async def find_crypt_mappings(self, mountpoint: str) -> List[str]:
        """
        dm-crypt mappings sitting on raw loops of images under the mountpoint.

        These are found from the mapping side, so a mapping whose exposed
        loop was never attached is still found.
        """
        result = await self.runner.run(["dmsetup", "ls", "--target", "crypt"], check=False)
        if not result.ok:
            return []

        names = []
        for line in result.stdout.splitlines():
            fields = line.split()
            if fields and _CRYPT_NAME_RE.match(fields[0]):
                names.append(fields[0])
        if not names:
            return []

        by_path = {loop.path: loop for loop in await self.list_loops()}
        mappings = []
        for name in names:
            for dep in await self._mapper_deps(name) or []:
                loop = by_path.get(dep)
                if loop is not None and _lies_under(loop.backing_file, mountpoint):
                    mappings.append(name)
                    break
        return mappings

    async def resolve_image_path(
        self,
        device: str,
        loops: List[LoopInfo] | None = None,
    ) -> str | None:
        """
        Image file behind a device-mapper device.

        Args:
            device: ``/dev/mapper/<name>``
            loops: Current loop table, fetched when omitted

        Returns:
            The backing ``.detto`` path, or None if it cannot be traced
        """
        if not _is_mapper(device):
            return None

        deps = await self._mapper_deps(os.path.basename(device))
        if deps is None:
            return None

        if loops is None:
            loops = await self.list_loops()
        by_path = {loop.path: loop for loop in loops}

        for dep in deps:
            loop = by_path.get(dep)
            if loop is not None and volume_id(loop.backing_file):
                return loop.backing_file
        return None

    async def find_exposed_loops(self, mountpoint: str) -> Dict[str, LoopInfo]:
        """
        Exposed loops whose images lie directly under the mountpoint.

        Loops over a dm-crypt mapping are followed back to the ``.detto``
        image underneath.

        Returns:
            Volume id -> exposed LoopInfo
        """
        loops = await self.list_loops()
        exposed: Dict[str, LoopInfo] = {}

        for loop in loops:
            image = loop.backing_file
            if _is_mapper(image):
                image = await self.resolve_image_path(image, loops) or ""
            elif image.endswith(ENCRYPTED_EXTENSION):
                # raw loop under a dm-crypt mapping
                continue

            if image and _lies_under(image, mountpoint):
                volume = volume_id(image)
                if volume is not None:
                    exposed[volume] = loop

        return exposed

    async def detach(self, mountpoint: str) -> None:
        """
        Detach every loop and dm-crypt device backed by the mountpoint.

        Every device is attempted; failures are raised together at the end.

        Raises:
            LoopDeviceError: If any device could not be detached
        """
        errors: List[str] = []

        for volume, loop in (await self.find_exposed_loops(mountpoint)).items():
            try:
                await self.runner.run(["losetup", "--detach", loop.path], retry=True)
                if _is_mapper(loop.backing_file):
                    await self.runner.run(
                        ["dmsetup", "remove", os.path.basename(loop.backing_file)],
                        retry=True,
                    )
                logger.info("loop_detached", volume=volume, loop=loop.path)
            except CommandError as e:
                errors.append(f"{loop.path}: {e}")

        # Mappings with no exposed loop on top, e.g. from a failed attach
        for name in await self.find_crypt_mappings(mountpoint):
            try:
                await self.runner.run(["dmsetup", "remove", name], retry=True)
                logger.info("crypt_device_removed", device=name)
            except CommandError as e:
                errors.append(f"{name}: {e}")

        # Raw loops of encrypted images and anything left over
        for loop in await self.list_loops():
            if not _lies_under(loop.backing_file, mountpoint):
                continue
            try:
                await self.runner.run(["losetup", "--detach", loop.path], retry=True)
            except CommandError as e:
                errors.append(f"{loop.path}: {e}")

        if errors:
            raise LoopDeviceError(
                f"Failed to detach loops for {mountpoint}",
                details={"errors": errors},
            )

    async def partition_uuid(self, device: str) -> str | None:
        """Filesystem UUID reported by blkid, or None."""
        result = await self.runner.run(
            ["blkid", "-s", "UUID", "-o", "value", device],
            check=False,
        )
        value = result.stdout.strip()
        return value or None
