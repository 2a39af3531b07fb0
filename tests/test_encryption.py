# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Encryption service tests on temporary key directories.
"""

import json
import os
import stat
import time

import pytest

from restorekit.encryption import EncryptionService, MASTER_KEY_BYTES
from restorekit.exceptions import EncryptionError, InvalidPassphraseError


@pytest.fixture
def keys(temp_dir) -> EncryptionService:
    return EncryptionService(temp_dir / "keys", temp_dir / "stash")


# ============================================================================
# Key lifecycle
# ============================================================================


@pytest.mark.asyncio
async def test_plain_asset(keys: EncryptionService):
    assert not await keys.is_encrypted("A1")
    assert not await keys.is_sealed("A1")
    assert not await keys.is_temp_access_enabled("A1")


@pytest.mark.asyncio
async def test_encrypt_leaves_key_unsealed(keys: EncryptionService, temp_dir):
    await keys.encrypt_asset("A1", "secret")

    assert await keys.is_encrypted("A1")
    assert not await keys.is_sealed("A1")

    key = await keys.get_crypt_key("A1")
    assert len(bytes.fromhex(key)) == MASTER_KEY_BYTES

    record = json.loads((temp_dir / "keys" / "A1.key").read_text())
    assert set(record) == {"salt", "iterations", "nonce", "wrapped_key"}
    assert key not in json.dumps(record)

    mode = stat.S_IMODE(os.stat(temp_dir / "stash" / "A1.key").st_mode)
    assert mode == 0o600


@pytest.mark.asyncio
async def test_stashed_key_is_private_regardless_of_umask(keys: EncryptionService, temp_dir):
    stash = temp_dir / "stash" / "A1.key"
    previous = os.umask(0)
    try:
        await keys.encrypt_asset("A1", "secret")
        assert stat.S_IMODE(os.stat(stash).st_mode) == 0o600

        await keys.seal("A1")
        # A world-readable leftover from an interrupted write
        leftover = temp_dir / "stash" / "A1.key.tmp"
        leftover.write_text("stale")
        os.chmod(leftover, 0o644)

        await keys.unseal("A1", "secret")
        assert stat.S_IMODE(os.stat(stash).st_mode) == 0o600
    finally:
        os.umask(previous)

    assert not leftover.exists()
    assert sorted(p.name for p in (temp_dir / "stash").iterdir()) == ["A1.key"]


@pytest.mark.asyncio
async def test_encrypt_twice_fails(keys: EncryptionService):
    await keys.encrypt_asset("A1", "secret")

    with pytest.raises(EncryptionError):
        await keys.encrypt_asset("A1", "other")


@pytest.mark.asyncio
async def test_seal_then_unseal_restores_same_key(keys: EncryptionService):
    await keys.encrypt_asset("A1", "secret")
    key = await keys.get_crypt_key("A1")

    await keys.seal("A1")
    assert await keys.is_sealed("A1")
    with pytest.raises(EncryptionError, match="sealed"):
        await keys.get_crypt_key("A1")

    await keys.unseal("A1", "secret")
    assert not await keys.is_sealed("A1")
    assert await keys.get_crypt_key("A1") == key


@pytest.mark.asyncio
async def test_wrong_passphrase(keys: EncryptionService):
    await keys.encrypt_asset("A1", "secret")
    await keys.seal("A1")

    with pytest.raises(InvalidPassphraseError):
        await keys.unseal("A1", "wrong")
    assert await keys.is_sealed("A1")


@pytest.mark.asyncio
async def test_key_record_bound_to_asset(keys: EncryptionService, temp_dir):
    """A key record copied to another asset does not unlock."""
    await keys.encrypt_asset("A1", "secret")
    (temp_dir / "keys" / "B2.key").write_text((temp_dir / "keys" / "A1.key").read_text())

    with pytest.raises(InvalidPassphraseError):
        await keys.unseal("B2", "secret")


@pytest.mark.asyncio
async def test_unseal_unknown_asset(keys: EncryptionService):
    with pytest.raises(EncryptionError):
        await keys.unseal("A1", "secret")


@pytest.mark.asyncio
async def test_seal_is_idempotent(keys: EncryptionService):
    await keys.encrypt_asset("A1", "secret")
    await keys.seal("A1")
    await keys.seal("A1")
    assert await keys.is_sealed("A1")


# ============================================================================
# Temporary access
# ============================================================================


@pytest.mark.asyncio
async def test_temp_access(keys: EncryptionService):
    await keys.encrypt_asset("A1", "secret")
    await keys.seal("A1")

    await keys.enable_temp_access("A1", "secret", duration_seconds=3600)
    assert await keys.is_temp_access_enabled("A1")
    assert not await keys.is_sealed("A1")

    await keys.disable_temp_access("A1")
    assert not await keys.is_temp_access_enabled("A1")


@pytest.mark.asyncio
async def test_expired_temp_access(keys: EncryptionService, temp_dir):
    (temp_dir / "keys").mkdir()
    (temp_dir / "keys" / "A1.tempAccess").write_text(str(int(time.time()) - 10))

    assert not await keys.is_temp_access_enabled("A1")


@pytest.mark.asyncio
async def test_unreadable_temp_access(keys: EncryptionService, temp_dir):
    (temp_dir / "keys").mkdir()
    (temp_dir / "keys" / "A1.tempAccess").write_text("soon")

    assert not await keys.is_temp_access_enabled("A1")
