# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

A small wrapper around create_config() that reads well-known
RESTOREKIT_* environment variables.
"""

from __future__ import annotations

import os
from typing import List

from restorekit.builder import create_config
from restorekit.config import RestoreKitConfig
from restorekit.errors import (
    explain_invalid_port_env,
    explain_invalid_retry_env,
    explain_invalid_reservation_ttl_env,
    explain_invalid_timeout_env,
)
from restorekit.exceptions import ConfigurationError


def _parse_port(name: str, value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_port_env(name, value)) from exc
    if not 0 < port < 65536:
        raise ConfigurationError(explain_invalid_port_env(name, value))
    return port


def _parse_retries(value: str | None) -> int:
    if not value:
        return 3
    try:
        attempts = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retry_env(value)) from exc
    if attempts < 1:
        raise ConfigurationError(explain_invalid_retry_env(value))
    return attempts


def _parse_timeout(value: str | None) -> float | None:
    if value is None:
        return 300.0
    if value.strip().lower() in ("", "none", "0"):
        return None
    try:
        seconds = float(value)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_timeout_env(value)) from exc
    if seconds < 0:
        raise ConfigurationError(explain_invalid_timeout_env(value))
    return seconds


def _parse_reservation_ttl(value: str | None) -> float:
    if not value:
        return 3600.0
    try:
        seconds = float(value)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_reservation_ttl_env(value)) from exc
    if seconds <= 0:
        raise ConfigurationError(explain_invalid_reservation_ttl_env(value))
    return seconds


def _parse_patterns(value: str | None) -> List[str] | None:
    if value is None:
        return None
    return [p.strip() for p in value.split(",") if p.strip()]


def create_config_from_env() -> RestoreKitConfig:
    """
    Create a RestoreKitConfig from environment variables.

    Optional environment variables:
        - RESTOREKIT_DATA_PATH: Directory for restores.db (default: /var/lib/restorekit)
        - RESTOREKIT_CLONE_POOL: Pool receiving clones (default: homePool)
        - RESTOREKIT_KEYS_PATH: Directory with key stash records
        - RESTOREKIT_KEY_STASH_PATH: Directory holding unsealed keys
        - RESTOREKIT_HIDE_PATTERNS: Comma-separated globs, e.g. "*.vmdk,voltab"
        - RESTOREKIT_TARGET_CTL: Target control utility (default: mercuryftpctl)
        - RESTOREKIT_TARGET_CTL_PORT: Control port (default: 3263)
        - RESTOREKIT_TARGET_PORT: Transfer port (default: 3262)
        - RESTOREKIT_COMMAND_RETRIES: Attempts for flaky commands (default: 3)
        - RESTOREKIT_COMMAND_TIMEOUT: Seconds per command, "none" to disable
        - RESTOREKIT_RESERVATION_TTL: Seconds before a pending restore of a
          crashed run may be reclaimed (default: 3600)
    """

    extra = {
        "target_ctl_port": _parse_port(
            "RESTOREKIT_TARGET_CTL_PORT", os.getenv("RESTOREKIT_TARGET_CTL_PORT"), 3263
        ),
        "target_transfer_port": _parse_port(
            "RESTOREKIT_TARGET_PORT", os.getenv("RESTOREKIT_TARGET_PORT"), 3262
        ),
        "command_timeout_seconds": _parse_timeout(os.getenv("RESTOREKIT_COMMAND_TIMEOUT")),
        "reservation_ttl_seconds": _parse_reservation_ttl(
            os.getenv("RESTOREKIT_RESERVATION_TTL")
        ),
    }

    target_ctl = os.getenv("RESTOREKIT_TARGET_CTL")
    if target_ctl:
        extra["target_ctl"] = target_ctl

    return create_config(
        data_path=os.getenv("RESTOREKIT_DATA_PATH"),
        clone_pool=os.getenv("RESTOREKIT_CLONE_POOL"),
        keys_path=os.getenv("RESTOREKIT_KEYS_PATH"),
        key_stash_path=os.getenv("RESTOREKIT_KEY_STASH_PATH"),
        hidden_file_patterns=_parse_patterns(os.getenv("RESTOREKIT_HIDE_PATTERNS")),
        command_retry_attempts=_parse_retries(os.getenv("RESTOREKIT_COMMAND_RETRIES")),
        **extra,
    )
