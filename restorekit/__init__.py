# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
RestoreKit - restore provisioning control plane for a backup appliance.

Provisions, exposes and tears down point-in-time restore resources
(ZFS clones, dm-crypt backed loop devices, network block targets)
through a transactional stage engine that rolls back partial work and
repairs state left behind by crashed runs. Package name: restorekit.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from restorekit.builder import create_config

# Environment-based configuration
from restorekit.env import create_config_from_env

# Core functions
from restorekit.core import (
    initialize_state,
    get_metrics,
    shutdown_state,
)

# Transaction engine
from restorekit.transaction import (
    FailureType,
    NestedTransaction,
    Stage,
    Transaction,
)

# Differential rollback
from restorekit.rollback import DifferentialRollbackService

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    # Core orchestration functions
    "initialize_state",
    "get_metrics",
    "shutdown_state",
    # Transaction engine
    "FailureType",
    "Stage",
    "Transaction",
    "NestedTransaction",
    # Services
    "DifferentialRollbackService",
]
