"""Exceptions raised by the process subsystem.

Every failure carries the operation that raised it and, where known, the
logical name of the worker process it targeted, so the CLI can report it
with context before exiting non-zero.
"""

from __future__ import annotations


class ProcessError(Exception):
    """Base class for all process-orchestration failures."""

    def __init__(
        self,
        message: str,
        operation: str = "",
        process_name: str | None = None,
    ) -> None:
        self.operation = operation
        self.process_name = process_name
        super().__init__(message)


class SpawnFailed(ProcessError):
    """The executable is missing or the OS refused to spawn it."""


class ProcessAlreadyRunning(ProcessError):
    """``start`` was called while a worker is already running."""


class SchedulerAlreadyRunning(ProcessError):
    """``Scheduler.start`` was called on a running scheduler."""


class ReadinessFailed(ProcessError):
    """The readiness signal was never seen.

    Catch this to handle both ways of missing it; ``elapsed`` is the number
    of seconds spent waiting.
    """

    def __init__(self, message: str, elapsed: float, operation: str = "await_signal") -> None:
        self.elapsed = elapsed
        super().__init__(message, operation=operation)


class ReadinessTimeout(ReadinessFailed):
    """The readiness signal did not appear before the deadline."""


class ReadinessStreamClosed(ReadinessFailed):
    """The output stream ended before the readiness signal appeared."""


class WorkerCommandFailed(ProcessError):
    """A one-shot worker command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        operation: str,
        process_name: str | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message, operation=operation, process_name=process_name)


class EvalNonZeroExit(WorkerCommandFailed):
    """``<worker> eval`` exited with a non-zero status."""


class EvalTimeout(ProcessError):
    """``<worker> eval`` did not exit within its timeout."""

    def __init__(self, message: str, timeout: float, process_name: str | None = None) -> None:
        self.timeout = timeout
        super().__init__(message, operation="eval", process_name=process_name)


class DevServerExited(ProcessError):
    """The dev server exited before it became reachable."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message, operation="dev")
