# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
RestoreKit Core - runtime state wiring.

initialize_state() builds every collaborator from a RestoreKitConfig and
hands them to the DifferentialRollbackService; nothing is looked up
globally after that.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import TypedDict

import structlog

from restorekit.block.loops import LoopHelper
from restorekit.config import RestoreKitConfig
from restorekit.encryption import EncryptionService
from restorekit.exclusion import FileExclusionService
from restorekit.restores.store import RestoreStore
from restorekit.restores.types import RestoreState
from restorekit.rollback.service import DifferentialRollbackService
from restorekit.storage.clones import CloneManager
from restorekit.system.commands import CommandRunner
from restorekit.target.mercury import MercuryTargetService

logger = structlog.get_logger()


@dataclass
class RestoreMetrics:
    """Counts derived from the restore database."""

    active_restores: int
    pending_restores: int
    failed_operations: int
    started_at: datetime


class RestoreKitState(TypedDict):
    """Runtime state shared by the HTTP integration and scripts."""

    config: RestoreKitConfig
    db_path: Path
    store: RestoreStore
    runner: CommandRunner
    service: DifferentialRollbackService
    started_at: datetime


async def initialize_state(
    config: RestoreKitConfig,
    runner: CommandRunner | None = None,
) -> RestoreKitState:
    """
    Initialize runtime state.

    Creates the data directory, initializes the restore database and
    builds the collaborators.

    Args:
        config: RestoreKit configuration
        runner: Command runner; built from the config's retry policy if omitted

    Returns:
        Initialized RestoreKitState dictionary
    """
    config.data_path.mkdir(parents=True, exist_ok=True)

    store = RestoreStore(config.db_path)
    await store.initialize()

    if runner is None:
        runner = CommandRunner(
            retry_attempts=config.command_retry_attempts,
            backoff_seconds=config.command_retry_backoff_seconds,
            timeout=config.command_timeout_seconds,
        )

    encryption = EncryptionService(config.keys_path, config.key_stash_path)
    service = DifferentialRollbackService(
        config=config,
        store=store,
        clones=CloneManager(runner, config),
        encryption=encryption,
        loops=LoopHelper(runner, encryption),
        targets=MercuryTargetService(runner, config),
        exclusion=FileExclusionService(),
    )

    logger.info("restorekit_state_initialized", db_path=str(config.db_path))

    return RestoreKitState(
        config=config,
        db_path=config.db_path,
        store=store,
        runner=runner,
        service=service,
        started_at=datetime.now(UTC),
    )


async def get_metrics(state: RestoreKitState) -> RestoreMetrics:
    """Get current restore metrics."""
    store = state["store"]
    return RestoreMetrics(
        active_restores=len(await store.list(RestoreState.ACTIVE)),
        pending_restores=len(await store.list(RestoreState.PENDING)),
        failed_operations=await store.count_failed_operations(),
        started_at=state["started_at"],
    )


async def shutdown_state(state: RestoreKitState) -> None:
    """
    Release runtime state.

    Provisioned restores are persistent and stay in place; pending
    reservations are reported because they mean a run was interrupted.
    """
    pending = await state["store"].list(RestoreState.PENDING)
    if pending:
        logger.warning(
            "pending_restores_at_shutdown",
            restores=[f"{r.asset_key}@{r.snapshot}" for r in pending],
        )
    logger.info("restorekit_state_shutdown_complete")
