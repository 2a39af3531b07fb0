# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
RestoreKit Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while restores are being provisioned.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List
import re


# Patterns hidden from a differential rollback clone before it is exported
DEFAULT_HIDDEN_FILE_PATTERNS = [
    "*.vmdk",
    "*.vmx",
    "*.vhd",
    "*.vhdx",
    "*.checksum",
    "*.log",
]


def _validate_dataset_name(name: str) -> bool:
    """
    Validate a ZFS dataset name.

    Rules:
    - Non-empty
    - Path components separated by single slashes
    - Letters, numbers, underscore, hyphen, colon and period only
    """
    if not name:
        return False
    return re.match(r"^[A-Za-z0-9_.:-]+(/[A-Za-z0-9_.:-]+)*$", name) is not None


def _validate_port(port: int) -> bool:
    return isinstance(port, int) and 0 < port < 65536


@dataclass(frozen=True)
class RestoreKitConfig:
    """
    Immutable configuration for restore provisioning.

    This configuration is frozen after creation so that every stage of a
    transaction sees the same values.
    """

    # Directory holding the restore database
    data_path: Path = field(default_factory=lambda: Path("/var/lib/restorekit"))

    # Pool that receives restore clones
    clone_pool: str = "homePool"

    # Parent dataset of agent datasets
    agent_base: str = "homePool/home/agents"

    # Parent dataset of share datasets
    share_base: str = "homePool/home"

    # Directory with per-asset encryption key stash records
    keys_path: Path = field(default_factory=lambda: Path("/datto/config/keys"))

    # In-memory directory holding unsealed keys
    key_stash_path: Path = field(default_factory=lambda: Path("/dev/shm/restorekit/keys"))

    # Glob patterns hidden from exported clones
    hidden_file_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_HIDDEN_FILE_PATTERNS)
    )

    # Network block-target control utility
    target_ctl: str = "mercuryftpctl"
    target_ctl_port: int = 3263
    target_transfer_port: int = 3262
    target_service: str = "mercuryftp.service"

    # Length of generated target passwords
    target_password_length: int = 32

    # Retry policy for flaky external commands
    command_retry_attempts: int = 3
    command_retry_backoff_seconds: float = 1.0

    # Per-command timeout, None to wait indefinitely
    command_timeout_seconds: float | None = 300.0

    # Age after which a pending reservation counts as abandoned even if
    # its owner pid is alive
    reservation_ttl_seconds: float = 3600.0

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        for name in ("clone_pool", "agent_base", "share_base"):
            value = getattr(self, name)
            if not _validate_dataset_name(value):
                errors.append(f"Invalid {name}: {value!r}")

        if not self.agent_base.startswith(f"{self.clone_pool}/"):
            errors.append(
                f"agent_base {self.agent_base!r} must live inside clone_pool {self.clone_pool!r}"
            )

        for name in ("target_ctl_port", "target_transfer_port"):
            if not _validate_port(getattr(self, name)):
                errors.append(f"{name} must be 1-65535, got {getattr(self, name)}")

        if not self.target_ctl:
            errors.append("target_ctl is required")

        if self.target_password_length < 8:
            errors.append(
                f"target_password_length must be >= 8, got {self.target_password_length}"
            )

        if self.command_retry_attempts < 1:
            errors.append(
                f"command_retry_attempts must be >= 1, got {self.command_retry_attempts}"
            )

        if self.command_retry_backoff_seconds < 0:
            errors.append(
                "command_retry_backoff_seconds must be >= 0, "
                f"got {self.command_retry_backoff_seconds}"
            )

        if self.command_timeout_seconds is not None and self.command_timeout_seconds <= 0:
            errors.append(
                f"command_timeout_seconds must be > 0, got {self.command_timeout_seconds}"
            )

        if self.reservation_ttl_seconds <= 0:
            errors.append(
                f"reservation_ttl_seconds must be > 0, got {self.reservation_ttl_seconds}"
            )

        for pattern in self.hidden_file_patterns:
            if not pattern or "/" in pattern:
                errors.append(f"Invalid hidden file pattern: {pattern!r}")

        # Raise all errors at once
        if errors:
            from restorekit.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def db_path(self) -> Path:
        """Path of the SQLite restore database."""
        return self.data_path / "restores.db"

    def with_updates(self, **kwargs) -> "RestoreKitConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return RestoreKitConfig(**current)
