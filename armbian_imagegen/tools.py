"""External tool execution.

This module handles:
- The ToolRunner interface every external binary call goes through
  (rkdeveloptool, kpartx, mount, xz, 7z, sudo)
- The subprocess-backed implementation with hard per-call timeouts
- Deadlines and cancellation threaded through long-running jobs

Tests substitute a fake runner; production code only ever uses
SubprocessToolRunner.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from armbian_imagegen.errors import (
    OperationCancelled,
    ToolError,
    ToolNotFound,
    ToolTimeout,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    """Outcome of an external tool invocation.

    Attributes:
        command: The command line that was executed.
        stdout: Captured standard output.
        stderr: Captured standard error.
        exit_code: Process exit code.
    """

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        """Whether the tool exited successfully."""
        return self.exit_code == 0

    def raise_for_status(self) -> ToolResult:
        """Raise ToolError if the tool exited non-zero.

        Returns:
            self, for chaining.

        Raises:
            ToolError: If exit_code is not 0.
        """
        if not self.ok:
            detail = self.stderr.strip() or self.stdout.strip()
            raise ToolError(
                f"Command failed with exit code {self.exit_code}: {self.command}"
                + (f": {detail}" if detail else ""),
                command=self.command,
                exit_code=self.exit_code,
                stderr=self.stderr,
            )
        return self


@runtime_checkable
class ToolRunner(Protocol):
    """Narrow interface for running external binaries."""

    def run(
        self,
        command: str | Path,
        args: list[str],
        timeout: float,
        input_data: bytes | None = None,
    ) -> ToolResult:
        """Run a command and capture its output.

        Raises:
            ToolTimeout: If the command exceeds timeout.
            ToolNotFound: If the binary does not exist.
        """
        ...


class SubprocessToolRunner:
    """ToolRunner backed by subprocess.run.

    Implements ToolRunner. Never uses a shell; arguments are passed as a list.
    """

    def run(
        self,
        command: str | Path,
        args: list[str],
        timeout: float,
        input_data: bytes | None = None,
    ) -> ToolResult:
        cmd = [str(command), *args]
        cmd_str = shlex.join(cmd)
        logger.debug("Running: %s (timeout=%ss)", cmd_str, timeout)

        try:
            result = subprocess.run(
                cmd,
                input=input_data,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Command timed out after %ss: %s", timeout, cmd_str)
            raise ToolTimeout(cmd_str, timeout) from e
        except FileNotFoundError as e:
            raise ToolNotFound(cmd_str) from e
        except OSError as e:
            raise ToolError(
                f"Failed to execute {cmd_str}: {e}",
                command=cmd_str,
                code="execution_error",
            ) from e

        return ToolResult(
            command=cmd_str,
            stdout=result.stdout.decode("utf-8", errors="replace"),
            stderr=result.stderr.decode("utf-8", errors="replace"),
            exit_code=result.returncode,
        )


class Deadline:
    """Deadline and cancellation signal for one job.

    Every external call made on behalf of the job asks the deadline for its
    timeout, so no call outlives the job.
    """

    def __init__(
        self,
        seconds: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._expires_at = time.monotonic() + seconds if seconds is not None else None
        self._cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._cancel_event.is_set()

    def remaining(self) -> float | None:
        """Seconds left before expiry, or None for no deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def check(self) -> None:
        """Raise if the job was cancelled or the deadline passed.

        Raises:
            OperationCancelled: If cancelled or expired.
        """
        if self.cancelled:
            raise OperationCancelled("Job was cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise OperationCancelled("Job deadline exceeded")

    def timeout(self, requested: float) -> float:
        """Clip a per-call timeout to the time left.

        Args:
            requested: The call's own timeout in seconds.

        Returns:
            The effective timeout.

        Raises:
            OperationCancelled: If nothing is left.
        """
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return requested
        return min(requested, remaining)


__all__ = [
    "Deadline",
    "SubprocessToolRunner",
    "ToolResult",
    "ToolRunner",
]
