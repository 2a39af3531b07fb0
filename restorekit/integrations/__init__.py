# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin endpoints.
"""

from restorekit.integrations.fastapi import (
    get_restorekit_state,
    register_restorekit_routes,
    restorekit_lifespan,
    verify_api_key,
)

__all__ = [
    "get_restorekit_state",
    "register_restorekit_routes",
    "restorekit_lifespan",
    "verify_api_key",
]
