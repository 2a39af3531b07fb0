# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
RestoreKit FastAPI Integration - admin endpoints for restore provisioning.

This module provides:
- Lifespan management (startup/shutdown)
- Protected admin endpoints for differential-rollback restores
- Health checks
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from restorekit.config import RestoreKitConfig
from restorekit.core import (
    RestoreKitState,
    get_metrics,
    initialize_state,
    shutdown_state,
)
from restorekit.exceptions import (
    InvalidPassphraseError,
    PassphraseRequiredError,
    RestoreExistsError,
    RestoreKitError,
    RestoreNotFoundError,
    TargetNotFoundError,
    TransactionFailedError,
)

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


class CreateRestoreBody(BaseModel):
    """Request body of the create endpoint."""

    suffix: str = "differential-rollback"
    passphrase: str | None = None


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the RESTOREKIT_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("RESTOREKIT_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="RESTOREKIT_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _status_for(error: BaseException) -> int:
    if isinstance(error, TransactionFailedError):
        return _status_for(error.cause)
    if isinstance(error, (PassphraseRequiredError, InvalidPassphraseError)):
        return 400
    if isinstance(error, (RestoreNotFoundError, TargetNotFoundError)):
        return 404
    if isinstance(error, RestoreExistsError):
        return 409
    return 500


def _http_error(error: RestoreKitError) -> HTTPException:
    detail = {"error": error.message, "type": type(error).__name__}
    if isinstance(error, TransactionFailedError):
        detail["stage"] = error.failed_stage
        detail["operation_id"] = error.operation_id
    return HTTPException(status_code=_status_for(error), detail=detail)


def register_restorekit_routes(
    app: FastAPI,
    state: RestoreKitState,
    prefix: str = "/admin/restorekit",
) -> None:
    """
    Register RestoreKit admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/restorekit)
    """
    service = state["service"]
    config = state["config"]

    @app.post(
        f"{prefix}/differential-rollback/{{asset_key}}/{{snapshot}}",
        status_code=201,
        dependencies=[Depends(verify_api_key)],
    )
    async def create_restore(asset_key: str, snapshot: int, body: CreateRestoreBody) -> dict:
        """
        Provision a differential-rollback target and return its connection data.
        """
        try:
            await service.create(asset_key, snapshot, body.suffix, body.passphrase)
            return await service.get_restore_data(asset_key, snapshot, body.suffix)
        except RestoreKitError as e:
            logger.warning("create_restore_rejected", asset_key=asset_key, error=str(e))
            raise _http_error(e) from e

    @app.get(
        f"{prefix}/differential-rollback/{{asset_key}}/{{snapshot}}",
        dependencies=[Depends(verify_api_key)],
    )
    async def get_restore(
        asset_key: str,
        snapshot: int,
        suffix: str = "differential-rollback",
    ) -> dict:
        """
        Connection data of a restore; re-publishes a lost target.
        """
        try:
            return await service.get_restore_data(asset_key, snapshot, suffix)
        except RestoreKitError as e:
            raise _http_error(e) from e

    @app.delete(
        f"{prefix}/differential-rollback/{{asset_key}}/{{snapshot}}",
        dependencies=[Depends(verify_api_key)],
    )
    async def delete_restore(
        asset_key: str,
        snapshot: int,
        suffix: str = "differential-rollback",
    ) -> dict:
        """
        Tear down a restore.
        """
        try:
            await service.remove(asset_key, snapshot, suffix)
        except RestoreKitError as e:
            raise _http_error(e) from e
        return {"removed": True, "asset_key": asset_key, "snapshot": snapshot}

    @app.get(f"{prefix}/restores", dependencies=[Depends(verify_api_key)])
    async def list_restores() -> list:
        """
        List stored restore records.
        """
        return [record.to_dict() for record in await service.list_restores()]

    @app.get(f"{prefix}/operations", dependencies=[Depends(verify_api_key)])
    async def list_operations(limit: int = 50) -> list:
        """
        List recent create/remove operations, newest first.
        """
        return await state["store"].list_operations(limit)

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the restore database and the target service.
        """
        db_ok = state["db_path"].exists()

        target_ok = False
        target_error = None
        try:
            target_ok = await service.targets.is_alive()
        except Exception as e:
            target_error = str(e)

        metrics = await get_metrics(state)

        status = "healthy"
        if not db_ok or not target_ok:
            status = "degraded"
        if not db_ok and not target_ok:
            status = "unhealthy"

        return {
            "status": status,
            "db_accessible": db_ok,
            "target_service_alive": target_ok,
            "target_error": target_error,
            "active_restores": metrics.active_restores,
            "pending_restores": metrics.pending_restores,
            "failed_operations": metrics.failed_operations,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration.
        """
        return {
            "data_path": str(config.data_path),
            "clone_pool": config.clone_pool,
            "agent_base": config.agent_base,
            "share_base": config.share_base,
            "hidden_file_patterns": config.hidden_file_patterns,
            "target_ctl": config.target_ctl,
            "target_transfer_port": config.target_transfer_port,
            "target_service": config.target_service,
            "command_retry_attempts": config.command_retry_attempts,
            "command_timeout_seconds": config.command_timeout_seconds,
            "reservation_ttl_seconds": config.reservation_ttl_seconds,
        }


@asynccontextmanager
async def restorekit_lifespan(
    app: FastAPI,
    config: RestoreKitConfig,
    prefix: str = "/admin/restorekit",
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: restorekit_lifespan(app, config))

    Args:
        app: FastAPI application
        config: RestoreKit configuration
        prefix: URL prefix for admin endpoints
    """
    logger.info("restorekit_lifespan_starting", data_path=str(config.data_path))

    state = await initialize_state(config)
    app.state.restorekit_state = state
    app.state.restorekit_config = config

    register_restorekit_routes(app, state, prefix)

    logger.info("restorekit_lifespan_started")

    try:
        yield
    finally:
        logger.info("restorekit_lifespan_stopping")
        await shutdown_state(state)
        logger.info("restorekit_lifespan_stopped")


def get_restorekit_state(app: FastAPI) -> RestoreKitState:
    """
    Get RestoreKit state from a FastAPI app.

    Useful for accessing state in custom endpoints.

    Raises:
        RuntimeError: If RestoreKit is not initialized
    """
    state = getattr(app.state, "restorekit_state", None)
    if not state:
        raise RuntimeError("RestoreKit not initialized. Use restorekit_lifespan first.")
    return state
