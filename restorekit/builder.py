# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
RestoreKit Builder - Functional builder pattern for configuration.

This module provides pure functions for building RestoreKitConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

from restorekit.config import DEFAULT_HIDDEN_FILE_PATTERNS, RestoreKitConfig


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "data_path": Path("/var/lib/restorekit"),
        "clone_pool": "homePool",
        "agent_base": "homePool/home/agents",
        "share_base": "homePool/home",
        "keys_path": Path("/datto/config/keys"),
        "key_stash_path": Path("/dev/shm/restorekit/keys"),
        "hidden_file_patterns": list(DEFAULT_HIDDEN_FILE_PATTERNS),
        "target_ctl": "mercuryftpctl",
        "target_ctl_port": 3263,
        "target_transfer_port": 3262,
        "target_service": "mercuryftp.service",
        "target_password_length": 32,
        "command_retry_attempts": 3,
        "command_retry_backoff_seconds": 1.0,
        "command_timeout_seconds": 300.0,
        "reservation_ttl_seconds": 3600.0,
    }


def with_data_path(config: ConfigDict, data_path: Path | str) -> ConfigDict:
    """
    Set the directory holding the restore database.

    Args:
        config: Current configuration dictionary
        data_path: Directory for restores.db

    Returns:
        New configuration dictionary with data path set
    """
    return {**config, "data_path": Path(data_path)}


def with_pool(
    config: ConfigDict,
    clone_pool: str,
    agent_base: str | None = None,
    share_base: str | None = None,
) -> ConfigDict:
    """
    Set the storage pool layout.

    Agent and share bases default to the conventional layout under the
    new pool (``<pool>/home/agents`` and ``<pool>/home``).

    Args:
        config: Current configuration dictionary
        clone_pool: Pool receiving restore clones
        agent_base: Parent dataset of agents
        share_base: Parent dataset of shares

    Returns:
        New configuration dictionary with pool layout set
    """
    return {
        **config,
        "clone_pool": clone_pool,
        "agent_base": agent_base or f"{clone_pool}/home/agents",
        "share_base": share_base or f"{clone_pool}/home",
    }


def with_key_paths(
    config: ConfigDict,
    keys_path: Path | str,
    key_stash_path: Path | str | None = None,
) -> ConfigDict:
    """
    Set where encryption key records and unsealed keys live.

    Args:
        config: Current configuration dictionary
        keys_path: Directory with per-asset key stash records
        key_stash_path: Directory holding unsealed keys

    Returns:
        New configuration dictionary with key paths set
    """
    updated = {**config, "keys_path": Path(keys_path)}
    if key_stash_path is not None:
        updated["key_stash_path"] = Path(key_stash_path)
    return updated


def hide_patterns(config: ConfigDict, patterns: List[str]) -> ConfigDict:
    """
    Add glob patterns hidden from exported clones.

    Args:
        config: Current configuration dictionary
        patterns: Patterns such as ['*.vmdk', 'voltab']

    Returns:
        New configuration dictionary with patterns added
    """
    new_patterns = list(config["hidden_file_patterns"])
    for pattern in patterns:
        if pattern not in new_patterns:
            new_patterns.append(pattern)
    return {**config, "hidden_file_patterns": new_patterns}


def hide_nothing(config: ConfigDict) -> ConfigDict:
    """
    Export clones without hiding any files.

    Args:
        config: Current configuration dictionary

    Returns:
        New configuration dictionary with an empty pattern list
    """
    return {**config, "hidden_file_patterns": []}


def with_target_service(
    config: ConfigDict,
    ctl: str = "mercuryftpctl",
    ctl_port: int = 3263,
    transfer_port: int = 3262,
    service: str = "mercuryftp.service",
) -> ConfigDict:
    """
    Configure the network block-target service.

    Args:
        config: Current configuration dictionary
        ctl: Control utility name or path
        ctl_port: Control port passed to the utility
        transfer_port: Port remote initiators connect to
        service: systemd unit running the target service

    Returns:
        New configuration dictionary with target service set
    """
    return {
        **config,
        "target_ctl": ctl,
        "target_ctl_port": ctl_port,
        "target_transfer_port": transfer_port,
        "target_service": service,
    }


def with_password_length(config: ConfigDict, length: int) -> ConfigDict:
    """
    Set the length of generated target passwords.

    Args:
        config: Current configuration dictionary
        length: Number of characters

    Returns:
        New configuration dictionary with password length set
    """
    if length < 8:
        raise ValueError(f"password length must be >= 8, got {length}")
    return {**config, "target_password_length": length}


def with_command_retry(
    config: ConfigDict,
    attempts: int,
    backoff_seconds: float = 1.0,
) -> ConfigDict:
    """
    Set the retry policy for flaky external commands.

    Args:
        config: Current configuration dictionary
        attempts: Total attempts including the first call
        backoff_seconds: Base of the exponential backoff

    Returns:
        New configuration dictionary with retry policy set
    """
    if attempts < 1:
        raise ValueError(f"retry attempts must be >= 1, got {attempts}")
    if backoff_seconds < 0:
        raise ValueError(f"retry backoff must be >= 0, got {backoff_seconds}")
    return {
        **config,
        "command_retry_attempts": attempts,
        "command_retry_backoff_seconds": backoff_seconds,
    }


def with_command_timeout(config: ConfigDict, seconds: float | None) -> ConfigDict:
    """
    Set the per-command timeout.

    Args:
        config: Current configuration dictionary
        seconds: Timeout in seconds, or None to wait indefinitely

    Returns:
        New configuration dictionary with timeout set
    """
    if seconds is not None and seconds <= 0:
        raise ValueError(f"command timeout must be > 0, got {seconds}")
    return {**config, "command_timeout_seconds": seconds}


def with_reservation_ttl(config: ConfigDict, seconds: float) -> ConfigDict:
    """
    Set when a pending reservation of a crashed run may be reclaimed.

    Args:
        config: Current configuration dictionary
        seconds: Age in seconds

    Returns:
        New configuration dictionary with reservation TTL set
    """
    if seconds <= 0:
        raise ValueError(f"reservation TTL must be > 0, got {seconds}")
    return {**config, "reservation_ttl_seconds": seconds}


def build_config(config_dict: ConfigDict) -> RestoreKitConfig:
    """
    Validate and build an immutable RestoreKitConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable RestoreKitConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    return RestoreKitConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

        config = pipe(
            lambda c: with_data_path(c, "/srv/restorekit"),
            lambda c: hide_patterns(c, ["voltab"]),
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> RestoreKitConfig:
    """
    Build config by applying a sequence of builder functions.

    Args:
        *steps: Builder functions to apply in sequence

    Returns:
        Validated, immutable RestoreKitConfig instance
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    *,
    data_path: str | Path | None = None,
    clone_pool: str | None = None,
    keys_path: str | Path | None = None,
    key_stash_path: str | Path | None = None,
    hidden_file_patterns: List[str] | None = None,
    command_retry_attempts: int | None = None,
    **kwargs: Any,
) -> RestoreKitConfig:
    """
    Create RestoreKit configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        data_path: Directory for the restore database (default: /var/lib/restorekit)
        clone_pool: Pool receiving restore clones (default: homePool)
        keys_path: Directory with key stash records
        key_stash_path: Directory holding unsealed keys
        hidden_file_patterns: Replace the default hidden patterns
        command_retry_attempts: Attempts for flaky external commands
        **kwargs: Additional configuration options

    Returns:
        Validated, immutable RestoreKitConfig instance

    Example:
        config = create_config(
            data_path="/srv/restorekit",
            hidden_file_patterns=["*.vmdk", "voltab"],
        )
    """
    config_dict = create_empty_config()

    if data_path:
        config_dict = with_data_path(config_dict, data_path)

    if clone_pool:
        config_dict = with_pool(config_dict, clone_pool)

    if keys_path:
        config_dict = with_key_paths(config_dict, keys_path, key_stash_path)
    elif key_stash_path:
        config_dict["key_stash_path"] = Path(key_stash_path)

    if hidden_file_patterns is not None:
        config_dict = hide_patterns(hide_nothing(config_dict), hidden_file_patterns)

    if command_retry_attempts is not None:
        config_dict = with_command_retry(
            config_dict,
            command_retry_attempts,
            config_dict["command_retry_backoff_seconds"],
        )

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
