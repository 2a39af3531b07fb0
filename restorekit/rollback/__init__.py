# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Differential rollback - provisioning pipeline and service.
"""

from restorekit.rollback.context import RestoreContext, RestoreRequest
from restorekit.rollback.service import DifferentialRollbackService
from restorekit.rollback.stages import (
    AttachLoopsStage,
    CreateCloneStage,
    CreateTargetStage,
    HideFilesStage,
    RestoreStage,
    SaveRestoreStage,
    UnsealAssetStage,
)

__all__ = [
    "DifferentialRollbackService",
    "RestoreContext",
    "RestoreRequest",
    "RestoreStage",
    "UnsealAssetStage",
    "CreateCloneStage",
    "HideFilesStage",
    "AttachLoopsStage",
    "CreateTargetStage",
    "SaveRestoreStage",
]
