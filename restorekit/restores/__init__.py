# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore records - types and the SQLite store.
"""

from restorekit.restores.store import (
    RestoreStore,
    complete_operation,
    delete_restore,
    find_restore,
    init_restore_db,
    list_operations,
    list_restores,
    record_operation,
    release_restore,
    reserve_restore,
    save_restore,
    take_over_reservation,
)
from restorekit.restores.types import (
    FULL_SUFFIX_OPTION_KEY,
    TARGET_NAME_OPTION_KEY,
    OperationRecord,
    RestoreRecord,
    RestoreState,
    RestoreType,
    restore_type_for_suffix,
)

__all__ = [
    # Store
    "RestoreStore",
    "init_restore_db",
    "reserve_restore",
    "save_restore",
    "find_restore",
    "release_restore",
    "take_over_reservation",
    "delete_restore",
    "list_restores",
    "record_operation",
    "complete_operation",
    "list_operations",
    # Types
    "RestoreRecord",
    "RestoreState",
    "RestoreType",
    "OperationRecord",
    "restore_type_for_suffix",
    "TARGET_NAME_OPTION_KEY",
    "FULL_SUFFIX_OPTION_KEY",
]
