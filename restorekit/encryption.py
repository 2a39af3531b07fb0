# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Encryption and temporary-access service for encrypted assets.

Each encrypted asset has a random master key used for its dm-crypt
mappings. The master key is stored wrapped with a key derived from the
user's passphrase (PBKDF2-HMAC-SHA256 + AES-GCM) in
``<keys_path>/<asset>.key``:

    {"salt": "<b64>", "iterations": 200000, "nonce": "<b64>", "wrapped_key": "<b64>"}

Unsealing places the plain master key in ``<key_stash_path>/<asset>.key``,
which is expected to live on a memory-backed filesystem. An asset is
sealed when it is encrypted and its key is not stashed.

Temporary access lets restores run without a passphrase until a deadline
stored as an epoch in ``<keys_path>/<asset>.tempAccess``.
"""

import asyncio
import base64
import json
import os
import time
from pathlib import Path

import aiofiles
import aiofiles.os
import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from restorekit.exceptions import EncryptionError, InvalidPassphraseError

logger = structlog.get_logger()


MASTER_KEY_BYTES = 64  # aes-xts-plain64 with a 512-bit key
KDF_ITERATIONS = 200_000


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _derive(passphrase: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode())


def _private_opener(path: str, flags: int) -> int:
    return os.open(path, flags, 0o600)


class EncryptionService:
    """File-backed key stash for encrypted assets."""

    def __init__(self, keys_path: Path, key_stash_path: Path):
        self.keys_path = Path(keys_path)
        self.key_stash_path = Path(key_stash_path)

    def _record_path(self, asset_key: str) -> Path:
        return self.keys_path / f"{asset_key}.key"

    def _stash_path(self, asset_key: str) -> Path:
        return self.key_stash_path / f"{asset_key}.key"

    def _temp_access_path(self, asset_key: str) -> Path:
        return self.keys_path / f"{asset_key}.tempAccess"

    async def is_encrypted(self, asset_key: str) -> bool:
        return await aiofiles.os.path.exists(self._record_path(asset_key))

    async def is_sealed(self, asset_key: str) -> bool:
        if not await self.is_encrypted(asset_key):
            return False
        return not await aiofiles.os.path.exists(self._stash_path(asset_key))

    async def is_temp_access_enabled(self, asset_key: str) -> bool:
        path = self._temp_access_path(asset_key)
        if not await aiofiles.os.path.exists(path):
            return False

        async with aiofiles.open(path, "r") as f:
            content = (await f.read()).strip()
        try:
            return int(content) > time.time()
        except ValueError:
            logger.warning("temp_access_file_invalid", asset_key=asset_key)
            return False

    async def encrypt_asset(self, asset_key: str, passphrase: str) -> None:
        """
        Generate a master key for a new encrypted asset.

        The key is left unsealed so the first backup can use it.

        Raises:
            EncryptionError: If the asset already has a key record
        """
        if await self.is_encrypted(asset_key):
            raise EncryptionError(f"Asset {asset_key} is already encrypted")

        master_key = os.urandom(MASTER_KEY_BYTES)
        salt = os.urandom(16)
        nonce = os.urandom(12)
        kek = await asyncio.to_thread(_derive, passphrase, salt, KDF_ITERATIONS)
        wrapped = AESGCM(kek).encrypt(nonce, master_key, asset_key.encode())

        record = {
            "salt": _b64(salt),
            "iterations": KDF_ITERATIONS,
            "nonce": _b64(nonce),
            "wrapped_key": _b64(wrapped),
        }

        await aiofiles.os.makedirs(self.keys_path, exist_ok=True)
        async with aiofiles.open(self._record_path(asset_key), "w") as f:
            await f.write(json.dumps(record))

        await self._stash(asset_key, master_key)
        logger.info("asset_encrypted", asset_key=asset_key)

    async def unseal(self, asset_key: str, passphrase: str) -> None:
        """
        Unlock the asset's master key with the passphrase and stash it.

        Raises:
            EncryptionError: If the asset has no key record
            InvalidPassphraseError: If the passphrase is wrong
        """
        path = self._record_path(asset_key)
        if not await aiofiles.os.path.exists(path):
            raise EncryptionError(f"No key stash for {asset_key}")

        async with aiofiles.open(path, "r") as f:
            record = json.loads(await f.read())

        try:
            salt = base64.b64decode(record["salt"])
            nonce = base64.b64decode(record["nonce"])
            wrapped = base64.b64decode(record["wrapped_key"])
            iterations = int(record["iterations"])
        except (KeyError, ValueError) as e:
            raise EncryptionError(f"Corrupt key record for {asset_key}") from e

        kek = await asyncio.to_thread(_derive, passphrase, salt, iterations)
        try:
            master_key = AESGCM(kek).decrypt(nonce, wrapped, asset_key.encode())
        except InvalidTag as e:
            logger.warning("passphrase_rejected", asset_key=asset_key)
            raise InvalidPassphraseError(
                f"Invalid passphrase for asset {asset_key}"
            ) from e

        await self._stash(asset_key, master_key)
        logger.info("asset_unsealed", asset_key=asset_key)

    async def seal(self, asset_key: str) -> None:
        """Drop the stashed master key. Sealing a sealed asset is a no-op."""
        path = self._stash_path(asset_key)
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)
            logger.info("asset_sealed", asset_key=asset_key)

    async def enable_temp_access(
        self,
        asset_key: str,
        passphrase: str,
        duration_seconds: int,
    ) -> None:
        """Unseal the asset and allow passphrase-less restores for a while."""
        await self.unseal(asset_key, passphrase)
        async with aiofiles.open(self._temp_access_path(asset_key), "w") as f:
            await f.write(str(int(time.time()) + duration_seconds))
        logger.info("temp_access_enabled", asset_key=asset_key, seconds=duration_seconds)

    async def disable_temp_access(self, asset_key: str) -> None:
        path = self._temp_access_path(asset_key)
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)

    async def get_crypt_key(self, asset_key: str) -> str:
        """
        Hex master key for dm-crypt tables.

        Raises:
            EncryptionError: If the asset is sealed
        """
        path = self._stash_path(asset_key)
        if not await aiofiles.os.path.exists(path):
            raise EncryptionError(f"Asset {asset_key} is sealed; no key available")

        async with aiofiles.open(path, "r") as f:
            return (await f.read()).strip()

    async def _stash(self, asset_key: str, master_key: bytes) -> None:
        await aiofiles.os.makedirs(self.key_stash_path, exist_ok=True)
        path = self._stash_path(asset_key)
        tmp = path.with_name(path.name + ".tmp")
        if await aiofiles.os.path.exists(tmp):
            # Left by an interrupted write; open() would keep its mode
            await aiofiles.os.remove(tmp)
        # Owner-only from creation, whatever the umask
        async with aiofiles.open(tmp, "w", opener=_private_opener) as f:
            await f.write(master_key.hex())
        await aiofiles.os.replace(tmp, path)
