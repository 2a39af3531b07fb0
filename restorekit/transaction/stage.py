# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stage - one reversible step of a multi-step operation.

A stage keeps no state of its own beyond what it writes onto the
context it was given. The owning transaction calls:

- ``set_context(ctx)`` once, before ``commit``
- ``commit()`` to perform the step; raising signals failure
- ``cleanup()`` after the transaction finishes, success or failure
- ``rollback()`` only when the step must be undone
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Generic, TypeVar


C = TypeVar("C")


class FailureType(str, Enum):
    """What a transaction does when a stage raises."""

    # Roll back everything committed so far and abort
    STOP_ON_FAILURE = "stop_on_failure"

    # Roll back only the failing stage and keep going
    CONTINUE_ON_FAILURE = "continue_on_failure"


class Stage(ABC, Generic[C]):
    """Unit of work executed by a Transaction."""

    def __init__(self) -> None:
        self.context: C | None = None

    @property
    def name(self) -> str:
        """Name used in every log line about this stage."""
        return type(self).__name__

    def set_context(self, context: C) -> None:
        self.context = context

    @abstractmethod
    async def commit(self) -> None:
        """Perform the step."""

    async def cleanup(self) -> None:
        """Release resources no longer needed, regardless of outcome."""

    @abstractmethod
    async def rollback(self) -> None:
        """Undo what commit() did."""

    def __repr__(self) -> str:
        return f"<{self.name}>"
