# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Network block targets.
"""

from restorekit.target.mercury import (
    MercuryTargetService,
    TargetInfo,
    generate_password,
    make_target_name,
)

__all__ = [
    "MercuryTargetService",
    "TargetInfo",
    "generate_password",
    "make_target_name",
]
