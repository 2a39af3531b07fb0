# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
External command execution.

Every OS resource (datasets, loop devices, device-mapper tables, network
targets) is driven through command-line utilities. run_command() executes
one of them without a shell; CommandRunner adds a timeout and an optional
retry-with-backoff policy for utilities that fail transiently (for
example ``losetup`` racing udev, or ``zfs destroy`` on a busy dataset).
"""

import asyncio
from dataclasses import dataclass
from typing import Sequence

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from restorekit.exceptions import CommandError

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Captured output of a finished command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def lines(self) -> list[str]:
        """Non-empty stdout lines."""
        return [line for line in self.stdout.splitlines() if line.strip()]


async def run_command(
    args: Sequence[str],
    *,
    check: bool = True,
    input: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    Args:
        args: Program and arguments; no shell is involved
        check: Raise CommandError on a non-zero exit status
        input: Text written to the command's stdin
        timeout: Seconds before the process is killed

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        CommandError: If the program cannot be started, times out,
            or exits non-zero while ``check`` is set
    """
    argv = [str(a) for a in args]

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(f"Failed to start {argv[0]}: {e}", args=argv) from e

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input.encode() if input is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise CommandError(
            f"{argv[0]} timed out after {timeout}s",
            args=argv,
            returncode=proc.returncode,
        ) from e

    result = CommandResult(
        args=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )

    logger.debug("command_finished", command=argv[0], returncode=result.returncode)

    if check and not result.ok:
        raise CommandError(
            f"{argv[0]} exited with status {result.returncode}",
            args=argv,
            returncode=result.returncode,
            stderr=result.stderr,
        )

    return result


class CommandRunner:
    """
    Runs external commands with a shared timeout and retry policy.

    Collaborators take a runner in their constructor so tests can
    substitute a recording fake.
    """

    def __init__(
        self,
        retry_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout: float | None = 300.0,
    ):
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout

    async def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
        retry: bool = False,
    ) -> CommandResult:
        """
        Run a command.

        Args:
            args: Program and arguments
            check: Raise CommandError on a non-zero exit status
            input: Text written to stdin
            retry: Retry on CommandError with exponential backoff

        Returns:
            CommandResult of the last attempt
        """
        if not retry or self.retry_attempts <= 1:
            return await run_command(args, check=check, input=input, timeout=self.timeout)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            retry=retry_if_exception_type(CommandError),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                result = await run_command(
                    args, check=check, input=input, timeout=self.timeout
                )
        return result

    @staticmethod
    def _log_retry(retry_state) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "command_retrying",
            attempt=retry_state.attempt_number,
            error=str(error),
        )
