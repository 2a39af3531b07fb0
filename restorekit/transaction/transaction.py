# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Transaction - ordered stage execution with rollback and cleanup.

Stages are committed one after another in the order they were added.
Each stage that commits successfully is pushed to the front of
``committed_stages``, which is therefore the rollback order.

Failure handling depends on the FailureType:

- STOP_ON_FAILURE: the failing stage is rolled back, then every
  committed stage most-recent-first, and TransactionFailedError is
  raised chained from the original error.
- CONTINUE_ON_FAILURE: only the failing stage is rolled back, the
  failure is recorded in ``failures`` and the next stage runs.

Whatever happens, cleanup() runs over every committed stage before
commit() returns or raises. Cleanup and rollback are best-effort: a
stage that raises is logged and reported, and the remaining stages
are still torn down.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Generic, List, Union

import structlog
from ulid import ULID

from restorekit.exceptions import TransactionCancelledError, TransactionFailedError
from restorekit.transaction.stage import C, FailureType, Stage

logger = structlog.get_logger()


CancelCheck = Callable[[], Union[bool, Awaitable[bool]]]
CancelCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class StageFailure:
    """A stage and the exception it raised."""

    stage: str
    error: BaseException


@dataclass
class TeardownReport:
    """Outcome of a best-effort cleanup or rollback pass."""

    action: str  # cleanup or rollback
    succeeded: List[str] = field(default_factory=list)
    failed: List[StageFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def extend(self, other: "TeardownReport") -> "TeardownReport":
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)
        return self


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Transaction(Generic[C]):
    """Executes stages in order and unwinds them on failure."""

    def __init__(
        self,
        failure_type: FailureType = FailureType.STOP_ON_FAILURE,
        context: C | None = None,
        name: str | None = None,
    ):
        self.failure_type = failure_type
        self.context = context
        self.stages: List[Stage[C]] = []
        self.committed_stages: List[Stage[C]] = []
        self.failures: List[StageFailure] = []
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.operation_id = str(ULID())
        self.last_cleanup_report: TeardownReport | None = None
        self.last_rollback_report: TeardownReport | None = None
        self._name = name
        self._cancel_check: CancelCheck | None = None
        self._on_cancelled: CancelCallback | None = None

    @property
    def name(self) -> str:
        return self._name or type(self).__name__

    def set_context(self, context: C) -> None:
        """Set the shared context and hand it to every stage already added."""
        self.context = context
        for stage in self.stages:
            stage.set_context(context)

    def add(self, stage: Stage[C]) -> "Transaction[C]":
        """
        Append a stage.

        Order of add() calls is the commit order; its reverse is the
        rollback order.

        Args:
            stage: Stage to append

        Returns:
            This transaction, for chaining
        """
        if self.context is not None:
            stage.set_context(self.context)
        self.stages.append(stage)
        return self

    def add_if(
        self,
        condition: bool,
        stage: Stage[C],
        alt_stage: Stage[C] | None = None,
    ) -> "Transaction[C]":
        """Add ``stage`` when condition holds, otherwise ``alt_stage`` if given."""
        if condition:
            return self.add(stage)
        if alt_stage is not None:
            return self.add(alt_stage)
        return self

    def set_on_cancel_callback(
        self,
        check: CancelCheck,
        on_cancelled: CancelCallback | None = None,
    ) -> "Transaction[C]":
        """
        Install a cancellation predicate.

        ``check`` is evaluated before each stage commit. When it returns
        True, ``on_cancelled`` runs, committed stages are rolled back and
        TransactionCancelledError is raised. A stage that has started
        always runs to completion.

        Both callables may be plain functions or coroutine functions.
        """
        self._cancel_check = check
        self._on_cancelled = on_cancelled
        return self

    def clear(self) -> None:
        """Remove all stages and callbacks."""
        self.stages = []
        self.committed_stages = []
        self.failures = []
        self._cancel_check = None
        self._on_cancelled = None

    async def commit(self) -> None:
        """
        Commit every stage in order.

        Raises:
            TransactionFailedError: A stage raised under STOP_ON_FAILURE
            TransactionCancelledError: The cancellation predicate fired
        """
        self.start_time = datetime.now(UTC)
        self.end_time = None
        self.committed_stages = []
        self.failures = []

        logger.info(
            "transaction_started",
            transaction=self.name,
            operation_id=self.operation_id,
            stages=len(self.stages),
            failure_type=self.failure_type.value,
        )

        try:
            for stage in self.stages:
                if await self._is_cancelled():
                    await self._abort_cancelled(stage)

                try:
                    await self._commit_stage(stage)
                except Exception as e:
                    await self._handle_stage_failure(stage, e)
                    continue

                self.committed_stages.insert(0, stage)
                logger.info(
                    "stage_committed",
                    transaction=self.name,
                    operation_id=self.operation_id,
                    stage=stage.name,
                )
        finally:
            self.last_cleanup_report = await self.cleanup()
            self.end_time = datetime.now(UTC)
            logger.info(
                "transaction_finished",
                transaction=self.name,
                operation_id=self.operation_id,
                committed=len(self.committed_stages),
                failures=len(self.failures),
                duration_seconds=(self.end_time - self.start_time).total_seconds(),
            )

    async def _commit_stage(self, stage: Stage[C]) -> None:
        """Commit a single stage. Subclasses may wrap this."""
        logger.debug(
            "stage_committing",
            transaction=self.name,
            operation_id=self.operation_id,
            stage=stage.name,
        )
        await stage.commit()

    async def _handle_stage_failure(self, stage: Stage[C], error: Exception) -> None:
        logger.error(
            "stage_commit_failed",
            transaction=self.name,
            operation_id=self.operation_id,
            stage=stage.name,
            error=str(error),
            error_type=type(error).__name__,
        )

        if self.failure_type == FailureType.CONTINUE_ON_FAILURE:
            await self._teardown("rollback", [stage])
            self.failures.append(StageFailure(stage=stage.name, error=error))
            return

        report = await self._teardown("rollback", [stage])
        report.extend(await self.rollback())
        self.last_rollback_report = report

        raise TransactionFailedError(
            f"Transaction failed. Rolled back, {error}",
            cause=error,
            failed_stage=stage.name,
            operation_id=self.operation_id,
            rollback_report=report,
        ) from error

    async def _is_cancelled(self) -> bool:
        if self._cancel_check is None:
            return False
        return bool(await _resolve(self._cancel_check()))

    async def _abort_cancelled(self, next_stage: Stage[C]) -> None:
        logger.warning(
            "transaction_cancelled",
            transaction=self.name,
            operation_id=self.operation_id,
            next_stage=next_stage.name,
        )

        if self._on_cancelled is not None:
            try:
                await _resolve(self._on_cancelled())
            except Exception as e:
                logger.warning(
                    "cancel_callback_failed",
                    transaction=self.name,
                    operation_id=self.operation_id,
                    error=str(e),
                )

        self.last_rollback_report = await self.rollback()

        raise TransactionCancelledError(
            f"Transaction cancelled before stage {next_stage.name}",
            details={"operation_id": self.operation_id, "stage": next_stage.name},
        )

    async def cleanup(self) -> TeardownReport:
        """Clean up every committed stage, most-recent-first."""
        return await self._teardown("cleanup", list(self.committed_stages))

    async def rollback(self) -> TeardownReport:
        """Roll back every committed stage, most-recent-first."""
        return await self._teardown("rollback", list(self.committed_stages))

    async def _teardown(self, action: str, stages: List[Stage[C]]) -> TeardownReport:
        report = TeardownReport(action=action)

        for stage in stages:
            method = stage.cleanup if action == "cleanup" else stage.rollback
            try:
                await method()
            except Exception as e:
                logger.warning(
                    f"stage_{action}_failed",
                    transaction=self.name,
                    operation_id=self.operation_id,
                    stage=stage.name,
                    error=str(e),
                )
                report.failed.append(StageFailure(stage=stage.name, error=e))
            else:
                report.succeeded.append(stage.name)
                logger.debug(
                    f"stage_{action}_done",
                    transaction=self.name,
                    operation_id=self.operation_id,
                    stage=stage.name,
                )

        return report


class NestedTransaction(Transaction[C], Stage[C]):
    """
    A Transaction usable as a Stage of another Transaction.

    Each lifecycle method runs at most once. The inner commit() already
    cleans up its own stages, so the parent's cleanup pass is a no-op;
    likewise an inner stop-on-failure rollback is not repeated when the
    parent rolls this stage back.
    """

    def __init__(
        self,
        failure_type: FailureType = FailureType.STOP_ON_FAILURE,
        context: C | None = None,
        name: str | None = None,
    ):
        super().__init__(failure_type=failure_type, context=context, name=name)
        self.commit_occurred = False
        self.cleanup_occurred = False
        self.rollback_occurred = False

    async def commit(self) -> None:
        if self.commit_occurred:
            logger.debug("nested_commit_skipped", transaction=self.name)
            return
        self.commit_occurred = True
        await super().commit()

    async def cleanup(self) -> TeardownReport:
        if self.cleanup_occurred:
            return TeardownReport(action="cleanup")
        self.cleanup_occurred = True
        return await super().cleanup()

    async def rollback(self) -> TeardownReport:
        if self.rollback_occurred:
            return TeardownReport(action="rollback")
        self.rollback_occurred = True
        return await super().rollback()
