# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Shared state of one differential-rollback provisioning run.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from restorekit.block.loops import LoopInfo
from restorekit.restores.types import RestoreRecord, RestoreType
from restorekit.storage.clone_spec import CloneSpec


@dataclass(frozen=True)
class RestoreRequest:
    """Immutable inputs of a provisioning request."""

    asset_key: str
    snapshot: int
    suffix: str
    clone_spec: CloneSpec
    restore_type: RestoreType
    encrypted: bool = False
    passphrase: str | None = field(default=None, repr=False)


@dataclass
class RestoreContext:
    """
    The request plus everything stages produce while it runs.

    Stages communicate only through this object; each stage records what
    it actually did so its rollback undoes exactly that.
    """

    request: RestoreRequest

    # Id of the transaction running the request
    operation_id: str | None = None

    # UnsealAssetStage
    unsealed: bool = False

    # CreateCloneStage
    reservation_held: bool = False
    clone_created: bool = False

    # HideFilesStage
    hidden_files: List[str] = field(default_factory=list)

    # AttachLoopsStage
    loops: Dict[str, LoopInfo] = field(default_factory=dict)
    lun_paths: List[str] = field(default_factory=list)

    # CreateTargetStage
    target_name: str | None = None
    target_password: str | None = field(default=None, repr=False)

    # SaveRestoreStage
    restore: RestoreRecord | None = None

    @property
    def clone_spec(self) -> CloneSpec:
        return self.request.clone_spec

    @property
    def mountpoint(self) -> str:
        return self.request.clone_spec.target_mountpoint
