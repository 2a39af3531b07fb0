# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with RestoreKit Integration.

This example serves the RestoreKit admin endpoints next to a small
application route, using the functional configuration builder.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    RESTOREKIT_DATA_PATH: Directory for the restore database
    RESTOREKIT_CLONE_POOL: Pool receiving restore clones
    RESTOREKIT_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from pathlib import Path

from fastapi import FastAPI

from restorekit.builder import (
    build_config,
    create_empty_config,
    hide_patterns,
    pipe,
    with_command_retry,
    with_data_path,
    with_pool,
    with_target_service,
)
from restorekit.exceptions import ConfigurationError
from restorekit.integrations.fastapi import get_restorekit_state, restorekit_lifespan


# Build RestoreKit configuration
def create_restorekit_config():
    """
    Create RestoreKit configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    data_path = Path(os.getenv("RESTOREKIT_DATA_PATH", "/var/lib/restorekit"))
    pool = os.getenv("RESTOREKIT_CLONE_POOL", "homePool")

    steps = pipe(
        lambda c: with_data_path(c, data_path),
        lambda c: with_pool(c, pool),
        # Hypervisor metadata is of no use to a remote initiator
        lambda c: hide_patterns(c, ["voltab", "*.agentInfo"]),
        lambda c: with_target_service(c, transfer_port=3262),
        # zfs and losetup occasionally lose races with udev
        lambda c: with_command_retry(c, attempts=5, backoff_seconds=0.5),
    )

    return build_config(steps(create_empty_config()))


# Initialize configuration
try:
    restorekit_config = create_restorekit_config()
except ConfigurationError as e:
    print(f"Failed to create RestoreKit config: {e}")
    # Use a local data directory for development
    restorekit_config = build_config(with_data_path(create_empty_config(), "./restorekit_data"))


app = FastAPI(
    title="Appliance Restore API",
    description="Example application exposing differential-rollback restores",
    version="1.0.0",
    lifespan=lambda app: restorekit_lifespan(app, restorekit_config),
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Appliance restore control plane",
        "docs": "/docs",
        "restorekit_admin": "/admin/restorekit/health",
    }


@app.get("/restores/summary")
async def restores_summary():
    """Count restores by type, using the state set up by the lifespan."""
    state = get_restorekit_state(app)
    summary: dict = {}
    for record in await state["service"].list_restores():
        summary[record.restore_type.value] = summary.get(record.restore_type.value, 0) + 1
    return summary


# ============================================================================
# RestoreKit Admin Endpoints (registered by the lifespan)
# ============================================================================
#
# POST   /admin/restorekit/differential-rollback/{asset}/{snapshot} - Provision
# GET    /admin/restorekit/differential-rollback/{asset}/{snapshot} - Connection data
# DELETE /admin/restorekit/differential-rollback/{asset}/{snapshot} - Tear down
# GET    /admin/restorekit/restores    - List restore records
# GET    /admin/restorekit/operations  - Operation audit trail
# GET    /admin/restorekit/health      - Health check
# GET    /admin/restorekit/config      - Configuration
