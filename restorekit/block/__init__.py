# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Block devices - loop and device-mapper handling for clone images.
"""

from restorekit.block.loops import LoopHelper, LoopInfo, volume_id

__all__ = [
    "LoopHelper",
    "LoopInfo",
    "volume_id",
]
