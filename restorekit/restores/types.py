# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore record types.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, TypedDict


# Option holding the network target name that backs a restore
TARGET_NAME_OPTION_KEY = "target"

# Option holding the full clone suffix the restore was created with
FULL_SUFFIX_OPTION_KEY = "fullSuffix"


class RestoreType(str, Enum):
    DIFFERENTIAL_ROLLBACK = "differential-rollback"
    BMR = "bmr"


class RestoreState(str, Enum):
    # Reserved by a running provisioning transaction
    PENDING = "pending"
    # Fully provisioned
    ACTIVE = "active"


def restore_type_for_suffix(suffix: str) -> RestoreType:
    """
    Restore type a clone suffix belongs to.

    ``bmr`` and ``bmr-<anything>`` are bare-metal restores; every other
    suffix is a differential rollback.
    """
    if suffix == RestoreType.BMR.value or suffix.startswith(f"{RestoreType.BMR.value}-"):
        return RestoreType.BMR
    return RestoreType.DIFFERENTIAL_ROLLBACK


@dataclass
class RestoreRecord:
    """A restore keyed by (asset_key, snapshot, restore_type)."""

    asset_key: str
    snapshot: int
    restore_type: RestoreType
    suffix: str
    state: RestoreState = RestoreState.PENDING
    options: Dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None  # ISO 8601
    activated_at: str | None = None  # ISO 8601
    operation_id: str | None = None  # ULID of the provisioning run
    owner_pid: int | None = None  # process holding a pending reservation

    @property
    def target_name(self) -> str | None:
        return self.options.get(TARGET_NAME_OPTION_KEY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_key": self.asset_key,
            "snapshot": self.snapshot,
            "restore_type": self.restore_type.value,
            "suffix": self.suffix,
            "state": self.state.value,
            "options": dict(self.options),
            "created_at": self.created_at,
            "activated_at": self.activated_at,
            "operation_id": self.operation_id,
            "owner_pid": self.owner_pid,
        }


class OperationRecord(TypedDict):
    """Audit trail entry of a provisioning or removal operation."""

    id: str  # ULID
    name: str  # create, remove, remove_all_for_point, reconcile, reclaim
    asset_key: str
    snapshot: int
    started_at: str  # ISO 8601
    completed_at: str | None
    committed_stages: list
    error: str | None
