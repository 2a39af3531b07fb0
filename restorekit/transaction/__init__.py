# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Transaction engine - staged execution with rollback and cleanup.
"""

from restorekit.transaction.stage import FailureType, Stage
from restorekit.transaction.transaction import (
    NestedTransaction,
    StageFailure,
    TeardownReport,
    Transaction,
)

__all__ = [
    "FailureType",
    "Stage",
    "Transaction",
    "NestedTransaction",
    "StageFailure",
    "TeardownReport",
]
