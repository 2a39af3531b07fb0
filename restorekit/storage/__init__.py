# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage - clone identity and the ZFS clone manager.
"""

from restorekit.storage.clone_spec import (
    SUFFIXES_WITHOUT_SNAPSHOT,
    CloneSpec,
    create_clone_name,
)
from restorekit.storage.clones import CloneManager

__all__ = [
    "SUFFIXES_WITHOUT_SNAPSHOT",
    "CloneSpec",
    "CloneManager",
    "create_clone_name",
]
