# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for RestoreKit tests.

Provides in-memory collaborators (clones, encryption, loops, targets,
file exclusion) that record every call in a shared event log, a
recording command runner, and a real SQLite restore store.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, Generator, List

import pytest
import pytest_asyncio

from restorekit.block.loops import LoopInfo, volume_id
from restorekit.builder import create_config
from restorekit.config import RestoreKitConfig
from restorekit.exceptions import (
    CommandError,
    EncryptionError,
    InvalidPassphraseError,
    LoopDeviceError,
    TargetNotFoundError,
)
from restorekit.restores.store import RestoreStore
from restorekit.rollback.service import DifferentialRollbackService
from restorekit.storage.clone_spec import CloneSpec
from restorekit.system.commands import CommandResult
from restorekit.target.mercury import TargetInfo, make_target_name

# Set test environment variables
os.environ["RESTOREKIT_ADMIN_API_KEY"] = "test-api-key-12345"


DEFAULT_VOLUMES = [
    "11111111-aaaa-4bbb-8ccc-000000000001",
    "22222222-aaaa-4bbb-8ccc-000000000002",
]


# ============================================================================
# Recording command runner
# ============================================================================


class FakeRunner:
    """
    Stands in for CommandRunner.

    Responses are matched by the longest registered argv prefix; a
    registered exception is raised instead of returning. Unmatched
    commands succeed with empty output.
    """

    def __init__(self):
        self.calls: List[dict] = []
        self._responses: Dict[tuple, object] = {}

    def on(self, prefix: List[str], stdout: str = "", returncode: int = 0, error=None):
        self._responses[tuple(prefix)] = error if error is not None else (stdout, returncode)

    def fail(self, prefix: List[str], stderr: str = "boom", returncode: int = 1):
        self.on(
            prefix,
            error=CommandError(
                f"{prefix[0]} exited with status {returncode}",
                args=prefix,
                returncode=returncode,
                stderr=stderr,
            ),
        )

    def commands(self) -> List[List[str]]:
        return [call["args"] for call in self.calls]

    async def run(self, args, *, check=True, input=None, retry=False):
        argv = [str(a) for a in args]
        self.calls.append({"args": argv, "check": check, "input": input, "retry": retry})

        match = None
        for prefix in sorted(self._responses, key=len, reverse=True):
            if tuple(argv[: len(prefix)]) == prefix:
                match = self._responses[prefix]
                break

        if isinstance(match, Exception):
            raise match
        stdout, returncode = match if match is not None else ("", 0)
        result = CommandResult(args=argv, returncode=returncode, stdout=stdout, stderr="")
        if check and not result.ok:
            raise CommandError(f"{argv[0]} failed", args=argv, returncode=returncode)
        return result


# ============================================================================
# In-memory collaborators
# ============================================================================


class FakeClones:
    def __init__(self, events: List[str]):
        self.events = events
        self.datasets: Dict[str, CloneSpec] = {}
        self.create_error: Exception | None = None
        self.created: List[str] = []

    async def exists(self, spec: CloneSpec) -> bool:
        return spec.target_dataset in self.datasets

    async def create(self, spec: CloneSpec) -> None:
        self.events.append("clone.create")
        if self.create_error is not None:
            raise self.create_error
        if spec.target_dataset not in self.datasets:
            self.datasets[spec.target_dataset] = spec
            self.created.append(spec.target_dataset)

    async def destroy(self, spec: CloneSpec, recursive: bool = False) -> None:
        self.events.append("clone.destroy")
        self.datasets.pop(spec.target_dataset, None)

    async def list_all(self) -> List[CloneSpec]:
        return list(self.datasets.values())


class FakeEncryption:
    def __init__(self, events: List[str]):
        self.events = events
        self.passphrases: Dict[str, str] = {}
        self.unsealed: set = set()
        self.temp_access: set = set()

    def add_encrypted(self, asset_key: str, passphrase: str, sealed: bool = True) -> None:
        self.passphrases[asset_key] = passphrase
        if not sealed:
            self.unsealed.add(asset_key)

    async def is_encrypted(self, asset_key: str) -> bool:
        return asset_key in self.passphrases

    async def is_sealed(self, asset_key: str) -> bool:
        return asset_key in self.passphrases and asset_key not in self.unsealed

    async def is_temp_access_enabled(self, asset_key: str) -> bool:
        return asset_key in self.temp_access

    async def unseal(self, asset_key: str, passphrase: str) -> None:
        self.events.append("encryption.unseal")
        if asset_key not in self.passphrases:
            raise EncryptionError(f"No key stash for {asset_key}")
        if self.passphrases[asset_key] != passphrase:
            raise InvalidPassphraseError(f"Invalid passphrase for asset {asset_key}")
        self.unsealed.add(asset_key)

    async def seal(self, asset_key: str) -> None:
        self.events.append("encryption.seal")
        self.unsealed.discard(asset_key)

    async def get_crypt_key(self, asset_key: str) -> str:
        if asset_key not in self.unsealed:
            raise EncryptionError(f"Asset {asset_key} is sealed; no key available")
        return "ab" * 64


class FakeLoops:
    """
    Loop table keyed by device path. Images are ``<mountpoint>/<volume>.datto``.
    """

    def __init__(self, events: List[str]):
        self.events = events
        self.volumes: List[str] = list(DEFAULT_VOLUMES)
        self.table: Dict[str, LoopInfo] = {}
        self.attach_error: Exception | None = None
        self._next = 0

    async def attach(self, asset_key: str, mountpoint: str, encrypted: bool) -> Dict[str, LoopInfo]:
        self.events.append("loops.attach")
        if self.attach_error is not None:
            raise self.attach_error

        attached = {}
        for volume in self.volumes:
            path = f"/dev/loop{self._next}"
            self._next += 1
            loop = LoopInfo(path=path, backing_file=f"{mountpoint}/{volume}.datto")
            self.table[path] = loop
            attached[volume] = loop
        return attached

    async def detach(self, mountpoint: str) -> None:
        self.events.append("loops.detach")
        for path, loop in list(self.table.items()):
            if loop.backing_file.startswith(f"{mountpoint}/"):
                del self.table[path]

    async def list_loops(self) -> List[LoopInfo]:
        return list(self.table.values())

    async def loop_info(self, path: str) -> LoopInfo:
        if path not in self.table:
            raise LoopDeviceError(f"Loop device {path} is not attached")
        return self.table[path]

    async def find_exposed_loops(self, mountpoint: str) -> Dict[str, LoopInfo]:
        exposed = {}
        for loop in self.table.values():
            if loop.backing_file.startswith(f"{mountpoint}/"):
                exposed[volume_id(loop.backing_file)] = loop
        return exposed

    async def resolve_image_path(self, device: str, loops=None) -> str | None:
        return None

    async def partition_uuid(self, device: str) -> str | None:
        return f"fs-{device.rsplit('/', 1)[-1]}"

    def reboot(self) -> None:
        self.table.clear()


class FakeTargets:
    def __init__(self, events: List[str]):
        self.events = events
        self.targets: Dict[str, TargetInfo] = {}
        self.alive = True
        self.starts = 0
        self.create_error: Exception | None = None

    make_target_name = staticmethod(make_target_name)

    async def is_alive(self) -> bool:
        return self.alive

    async def start_if_dead(self) -> bool:
        if self.alive:
            return False
        self.alive = True
        self.starts += 1
        return True

    async def list_targets(self) -> Dict[str, TargetInfo]:
        return dict(self.targets)

    async def get_target(self, name: str) -> TargetInfo:
        if name not in self.targets:
            raise TargetNotFoundError(f"Target {name} does not exist")
        return self.targets[name]

    async def create_target(self, name: str, luns: List[str], password: str) -> None:
        self.events.append("target.create")
        if self.create_error is not None:
            raise self.create_error
        self.targets[name] = TargetInfo(name=name, password=password, luns=list(luns))

    async def delete_target(self, name: str) -> None:
        if name not in self.targets:
            raise TargetNotFoundError(f"Target {name} does not exist")
        self.events.append("target.delete")
        del self.targets[name]

    def wipe(self) -> None:
        """Lose every target, as a crash of the service does."""
        self.targets.clear()


class FakeExclusion:
    def __init__(self, events: List[str]):
        self.events = events
        self.hidden: Dict[str, List[str]] = {}
        self.files: List[str] = ["disk.vmdk", "agent.log"]

    async def hide(self, mountpoint: str, patterns: List[str]) -> List[str]:
        self.events.append("exclusion.hide")
        self.hidden[mountpoint] = list(self.files)
        return list(self.files)

    async def unhide(self, mountpoint: str) -> List[str]:
        self.events.append("exclusion.unhide")
        return self.hidden.pop(mountpoint, [])


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir: Path) -> RestoreKitConfig:
    """Configuration rooted in the temporary directory."""
    return create_config(
        data_path=temp_dir / "data",
        keys_path=temp_dir / "keys",
        key_stash_path=temp_dir / "stash",
    )


@pytest.fixture
def events() -> List[str]:
    return []


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def clones(events) -> FakeClones:
    return FakeClones(events)


@pytest.fixture
def encryption(events) -> FakeEncryption:
    return FakeEncryption(events)


@pytest.fixture
def loops(events) -> FakeLoops:
    return FakeLoops(events)


@pytest.fixture
def targets(events) -> FakeTargets:
    return FakeTargets(events)


@pytest.fixture
def exclusion(events) -> FakeExclusion:
    return FakeExclusion(events)


@pytest_asyncio.fixture
async def store(temp_dir: Path) -> RestoreStore:
    """Create a temporary restore database."""
    store = RestoreStore(temp_dir / "restores.db")
    await store.initialize()
    return store


@pytest.fixture
def service(config, store, clones, encryption, loops, targets, exclusion) -> DifferentialRollbackService:
    """Differential rollback service wired to the in-memory collaborators."""
    return DifferentialRollbackService(
        config=config,
        store=store,
        clones=clones,
        encryption=encryption,
        loops=loops,
        targets=targets,
        exclusion=exclusion,
    )

