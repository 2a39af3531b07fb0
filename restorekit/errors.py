# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for RestoreKit.

These helpers centralize wording for common configuration and request
errors so that all modules present consistent, actionable messages.
"""


def explain_invalid_port_env(name: str, value: str | None) -> str:
    """
    Explain that a port environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be an integer between 1 and 65535."
    )


def explain_invalid_retry_env(value: str | None) -> str:
    """
    Explain that RESTOREKIT_COMMAND_RETRIES is invalid.
    """

    return (
        f"Invalid RESTOREKIT_COMMAND_RETRIES value: {value!r}. "
        "It must be a positive integer number of attempts."
    )


def explain_invalid_timeout_env(value: str | None) -> str:
    """
    Explain that RESTOREKIT_COMMAND_TIMEOUT is invalid.
    """

    return (
        f"Invalid RESTOREKIT_COMMAND_TIMEOUT value: {value!r}. "
        "Expected a positive number of seconds, or 'none' to disable the timeout."
    )


def explain_invalid_reservation_ttl_env(value: str | None) -> str:
    """
    Explain that RESTOREKIT_RESERVATION_TTL is invalid.
    """

    return (
        f"Invalid RESTOREKIT_RESERVATION_TTL value: {value!r}. "
        "Expected a positive number of seconds."
    )


def explain_abandoned_reservation(asset_key: str, snapshot: int, suffix: str) -> str:
    """
    Explain that a pending restore was left behind by an interrupted run.
    """

    return (
        f"Differential rollback for {asset_key}@{snapshot}-{suffix} was never finished; "
        "the run provisioning it was interrupted. Create it again to reclaim it."
    )


def explain_restore_exists(asset_key: str, snapshot: int, suffix: str) -> str:
    """
    Explain that a restore is already provisioned for the request.
    """

    return (
        f"Differential rollback for {asset_key}@{snapshot}-{suffix} already exists. "
        "Remove the existing restore before creating a new one."
    )


def explain_missing_passphrase(asset_key: str) -> str:
    """
    Explain that an encrypted asset needs a passphrase.
    """

    return (
        f"Passphrase not provided for asset {asset_key}. "
        "The asset is encrypted and temporary access is not enabled, "
        "so its key must be unlocked with the passphrase."
    )


def explain_restore_not_found(asset_key: str, snapshot: int, restore_type: str) -> str:
    """
    Explain that no restore record exists for the lookup.
    """

    return (
        f"Restore not found for {asset_key}@{snapshot} ({restore_type}). "
        "It may have been removed already, or provisioning never completed."
    )
