# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
RestoreKit Exceptions - Custom exceptions for the restorekit package.
"""

from typing import Any, Sequence


class RestoreKitError(Exception):
    """Base exception for all RestoreKit errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(RestoreKitError):
    """Raised when configuration is invalid."""

    pass


# ============================================================================
# Transaction engine
# ============================================================================


class TransactionError(RestoreKitError):
    """Raised when a transaction cannot complete."""

    pass


class TransactionFailedError(TransactionError):
    """
    Raised by a stop-on-failure transaction after its rollback finished.

    The original stage exception is available as ``cause`` (and as
    ``__cause__``); ``rollback_report`` tells which stages could not be
    rolled back.
    """

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException,
        failed_stage: str,
        operation_id: str,
        rollback_report: Any = None,
    ):
        super().__init__(
            message,
            details={"stage": failed_stage, "operation_id": operation_id},
        )
        self.cause = cause
        self.failed_stage = failed_stage
        self.operation_id = operation_id
        self.rollback_report = rollback_report


class TransactionCancelledError(TransactionError):
    """Raised when the cancellation predicate fires between stages."""

    pass


# ============================================================================
# Request preconditions
# ============================================================================


class PreconditionError(RestoreKitError):
    """Raised when a request is rejected before any stage runs."""

    pass


class RestoreExistsError(PreconditionError):
    """Raised when a restore for the same asset/snapshot/type already exists."""

    pass


class PassphraseRequiredError(PreconditionError):
    """Raised when an encrypted, sealed asset is requested without a passphrase."""

    pass


# ============================================================================
# Restore records
# ============================================================================


class RestoreNotFoundError(RestoreKitError):
    """Raised when no restore record matches a lookup."""

    pass


class RestoreStoreError(RestoreKitError):
    """Raised when restore store operations fail."""

    pass


# ============================================================================
# Resource collaborators
# ============================================================================


class CommandError(RestoreKitError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ):
        super().__init__(
            message,
            details={
                "command": " ".join(args),
                "returncode": returncode,
                "stderr": stderr.strip(),
            },
        )
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr


class CloneError(RestoreKitError):
    """Raised when clone operations fail."""

    pass


class LoopDeviceError(RestoreKitError):
    """Raised when loop or device-mapper operations fail."""

    pass


class EncryptionError(RestoreKitError):
    """Raised when encryption operations fail."""

    pass


class InvalidPassphraseError(EncryptionError):
    """Raised when a passphrase does not unlock the asset key."""

    pass


class TargetError(RestoreKitError):
    """Raised when network block-target operations fail."""

    pass


class TargetNotFoundError(TargetError):
    """Raised when a network block target does not exist."""

    pass


class ExclusionError(RestoreKitError):
    """Raised when files cannot be hidden or restored in a clone."""

    pass
