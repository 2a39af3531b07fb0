# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
System helpers - external command execution.
"""

from restorekit.system.commands import CommandResult, CommandRunner, run_command

__all__ = [
    "CommandResult",
    "CommandRunner",
    "run_command",
]
