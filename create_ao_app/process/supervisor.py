"""Worker process supervision.

``ProcessSupervisor`` owns the single ``aos`` worker a project runs
alongside its dev server.  It spawns the worker from a ``LaunchSpec``,
records its identity on disk so later CLI invocations can find it, stops
it, and wraps the worker's one-shot sub-commands (``eval``, ``monitor``,
``watch``, ``list``, cron setup) as typed, awaitable operations.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from create_ao_app.config import AOConfig, Settings
from create_ao_app.process.errors import (
    EvalNonZeroExit,
    EvalTimeout,
    ProcessAlreadyRunning,
    SpawnFailed,
    WorkerCommandFailed,
)
from create_ao_app.process.launch import LaunchSpec
from create_ao_app.process.pattern import compile as compile_pattern
from create_ao_app.process.records import ProcessRecord, RecordStore, pid_alive
from create_ao_app.utils import (
    is_command_available,
    print_success,
    print_warning,
    run_command,
)

console = Console()

WORKER_SOURCE_EXTENSION = ".lua"
INSTALL_HINT = "npm i -g https://get_ao.g8way.io"

# Extra time given to `eval --timeout` to exit on its own before we kill it.
EVAL_GRACE_SECONDS = 1.0


class ProcessState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class RunningHandle:
    """A worker spawned by this supervisor."""

    pid: int
    name: str
    command: list[str]
    cwd: Path
    record: ProcessRecord
    process: asyncio.subprocess.Process = field(repr=False)


@dataclass
class EvalResult:
    """Outcome of a successful ``eval`` invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0


@dataclass
class ProcessDescriptor:
    """One line of ``<worker> list`` output."""

    name: str
    process_id: str | None
    raw: str


def parse_process_line(line: str) -> ProcessDescriptor | None:
    """Parse a ``list`` output line: ``<name> [<process-id> ...]``.

    Returns ``None`` for blank lines.
    """
    raw = line.strip()
    if not raw:
        return None
    tokens = raw.split()
    return ProcessDescriptor(
        name=tokens[0],
        process_id=tokens[1] if len(tokens) > 1 else None,
        raw=raw,
    )


def find_worker_files(
    root: str | Path,
    extension: str = WORKER_SOURCE_EXTENSION,
) -> list[str]:
    """Recursively collect worker source files under *root*.

    Directories whose name starts with ``.`` are skipped.  Paths are returned
    relative to *root* with ``/`` separators, in directory-traversal order
    (not sorted).
    """
    root_path = Path(root)
    found: list[str] = []

    def _walk(directory: Path) -> None:
        with os.scandir(directory) as entries:
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    if not entry.name.startswith("."):
                        _walk(Path(entry.path))
                elif entry.is_file() and entry.name.endswith(extension):
                    found.append(Path(entry.path).relative_to(root_path).as_posix())

    _walk(root_path)
    return found


class ProcessSupervisor:
    """Starts, tracks and drives the external worker process.

    One instance owns the in-memory state for one worker.  The on-disk
    ``ProcessRecord`` carries that identity across CLI invocations; ``stop``
    works from the record alone, so it can be called from a fresh process.

    ``evaluate`` calls are serialized behind a lock, so a scheduler tick and
    a manual ``eval`` never run against the worker at the same time.
    """

    def __init__(
        self,
        worker_binary: str = "aos",
        store: RecordStore[ProcessRecord] | None = None,
        eval_timeout: float = 30.0,
    ) -> None:
        self.worker_binary = worker_binary
        self.store = store or RecordStore(Path.home() / ".ao-processes.json", ProcessRecord)
        self.eval_timeout = eval_timeout
        self._state = ProcessState.IDLE
        self._handle: RunningHandle | None = None
        self._eval_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessSupervisor":
        return cls(
            worker_binary=settings.worker_binary,
            store=RecordStore(settings.process_file, ProcessRecord),
            eval_timeout=settings.eval_timeout,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        self._reap()
        return self._state

    @property
    def handle(self) -> RunningHandle | None:
        return self._handle

    def is_running(self) -> bool:
        """Whether this supervisor is tracking a worker that has not exited."""
        self._reap()
        return self._state == ProcessState.RUNNING and self._handle is not None

    def _reap(self) -> None:
        """Notice a worker that exited without going through wait or stop.

        The handle is kept so a later ``wait()`` still reports the exit code;
        the record is dropped when it names the exited worker.
        """
        handle = self._handle
        if handle is None or handle.process.returncode is None:
            return
        if self._state != ProcessState.RUNNING:
            return
        self._state = ProcessState.STOPPED
        record = self.store.read()
        if record is not None and record.pid == handle.pid:
            self.store.clear()

    def current_record(self) -> ProcessRecord | None:
        """The persisted record of the last started worker, if any."""
        return self.store.read()

    def _tracked_name(self) -> str | None:
        if self._handle is not None:
            return self._handle.name
        record = self.store.read()
        return record.name if record else None

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def check_installation(self) -> bool:
        """Return ``True`` if the worker executable is on ``PATH``."""
        if is_command_available(self.worker_binary):
            print_success(f"{self.worker_binary} is installed")
            return True
        print_warning(f"{self.worker_binary} is not installed. Install it with:")
        console.print(f"\n  {INSTALL_HINT}\n")
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_command(self, launch_spec: LaunchSpec) -> list[str]:
        """Full argument vector, executable first."""
        return [self.worker_binary, *launch_spec.to_args()]

    async def start(
        self,
        path: str | Path,
        config: AOConfig,
        launch_spec: LaunchSpec,
        capture: bool = False,
    ) -> RunningHandle:
        """Spawn the worker in *path* and persist its ``ProcessRecord``.

        Args:
            path: Project directory; becomes the worker's working directory.
            config: Project configuration (supplies the default name).
            launch_spec: Resolved start parameters.
            capture: Pipe the worker's stdout/stderr instead of inheriting
                the terminal.

        Returns:
            The ``RunningHandle`` of the spawned worker.

        Raises:
            ProcessAlreadyRunning: If this supervisor already runs a worker,
                or the persisted record names a live process.
            SpawnFailed: If the executable is missing or cannot be spawned.
        """
        name = launch_spec.name or config.process_name

        self._reap()
        if self._state in (ProcessState.STARTING, ProcessState.RUNNING):
            raise ProcessAlreadyRunning(
                f"Worker '{self._tracked_name()}' is already running. Stop it first.",
                operation="start",
                process_name=name,
            )

        existing = self.store.read()
        if existing is not None:
            if pid_alive(existing.pid):
                raise ProcessAlreadyRunning(
                    f"Worker '{existing.name}' is already running (pid {existing.pid}). "
                    "Run `stop` first.",
                    operation="start",
                    process_name=existing.name,
                )
            print_warning(
                f"Discarding stale record for '{existing.name}' (pid {existing.pid} is gone)."
            )

        cwd = Path(path).resolve()
        if not cwd.is_dir():
            raise SpawnFailed(
                f"Project directory does not exist: {cwd}",
                operation="start",
                process_name=name,
            )

        cmd = self.build_command(launch_spec)
        console.print(
            Panel(
                f"[cyan]Starting AO process[/cyan] {name}\n"
                f"  Directory: {cwd}\n"
                f"  Command: {' '.join(cmd)}",
                title="Process Supervisor",
                border_style="cyan",
            )
        )

        self._state = ProcessState.STARTING
        stdio = asyncio.subprocess.PIPE if capture else None
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=stdio,
                stderr=stdio,
                cwd=str(cwd),
            )
        except FileNotFoundError:
            self._state = ProcessState.IDLE
            raise SpawnFailed(
                f"Worker executable not found: '{self.worker_binary}'. "
                f"Install it with: {INSTALL_HINT}",
                operation="start",
                process_name=name,
            ) from None
        except PermissionError:
            self._state = ProcessState.IDLE
            raise SpawnFailed(
                f"Permission denied executing: '{self.worker_binary}'. "
                "Check file permissions.",
                operation="start",
                process_name=name,
            ) from None
        except OSError as exc:
            self._state = ProcessState.IDLE
            raise SpawnFailed(
                f"Failed to start worker '{name}': {exc}",
                operation="start",
                process_name=name,
            ) from exc

        record = ProcessRecord(pid=process.pid, name=name, config_path=str(cwd))
        try:
            self.store.write(record)
        except OSError as exc:
            print_warning(f"Could not save process record to {self.store.path}: {exc}")

        self._handle = RunningHandle(
            pid=process.pid,
            name=name,
            command=cmd,
            cwd=cwd,
            record=record,
            process=process,
        )
        self._state = ProcessState.RUNNING
        print_success(
            f"Started AO process: {name} (pid {process.pid}) "
            f"with {len(launch_spec.load)} Lua file(s)"
        )
        return self._handle

    async def wait(self) -> int | None:
        """Wait for the spawned worker to exit and return its exit code.

        Clears the persisted record if it still names this worker.  Returns
        ``None`` when nothing was spawned by this supervisor.
        """
        handle = self._handle
        if handle is None:
            return None
        code = await handle.process.wait()
        if self._handle is handle:
            self._handle = None
            self._state = ProcessState.STOPPED
        record = self.store.read()
        if record is not None and record.pid == handle.pid:
            self.store.clear()
        return code

    def stop(self) -> bool:
        """Send SIGTERM to the tracked worker and forget it.

        The record is deleted whether or not the signal could be delivered,
        so a dead worker never leaves a record that blocks the next start.
        Does not wait for the process to exit.  Calling this with nothing
        tracked is a successful no-op.

        Returns:
            ``False`` only if the OS refused to deliver the signal (for
            example, the pid belongs to another user).  A worker that has
            already exited counts as stopped.
        """
        self._reap()
        record = self.store.read()
        live = self._handle if self.is_running() else None
        pid = record.pid if record else (live.pid if live else None)
        name = record.name if record else (live.name if live else None)

        if pid is None:
            return True

        stopped = True
        try:
            if pid <= 0:
                print_warning(f"Ignoring invalid pid {pid} for '{name}'.")
            else:
                os.kill(pid, signal.SIGTERM)
                print_success(f"Stopped AO process: {name} (pid {pid})")
        except ProcessLookupError:
            print_warning(f"Process '{name}' (pid {pid}) was not running.")
        except OSError as exc:
            print_warning(f"Could not signal process '{name}' (pid {pid}): {exc}")
            stopped = False
        finally:
            self.store.clear()
            self._handle = None
            self._state = ProcessState.STOPPED

        return stopped

    # ------------------------------------------------------------------
    # One-shot worker commands
    # ------------------------------------------------------------------

    async def _run_worker(
        self,
        operation: str,
        args: list[str],
        process_name: str | None = None,
        capture: bool = False,
        timeout: float | None = None,
    ) -> tuple[int, str, str]:
        cmd = [self.worker_binary, *args]
        try:
            return await run_command(cmd, timeout=timeout, capture=capture)
        except asyncio.TimeoutError:
            # TimeoutError is an OSError subclass; keep it distinct from spawn failures.
            raise
        except FileNotFoundError:
            raise SpawnFailed(
                f"Worker executable not found: '{self.worker_binary}'. "
                f"Install it with: {INSTALL_HINT}",
                operation=operation,
                process_name=process_name,
            ) from None
        except OSError as exc:
            raise SpawnFailed(
                f"Failed to run `{' '.join(cmd)}`: {exc}",
                operation=operation,
                process_name=process_name,
            ) from exc

    def _check_exit(
        self,
        operation: str,
        result: tuple[int, str, str],
        process_name: str | None,
    ) -> None:
        code, _, stderr = result
        if code != 0:
            detail = f": {stderr}" if stderr else ""
            raise WorkerCommandFailed(
                f"`{operation}` failed for '{process_name or '-'}' (exit {code}){detail}",
                operation=operation,
                process_name=process_name,
                returncode=code,
                stderr=stderr,
            )

    async def evaluate(
        self,
        input: str,
        await_response: bool = False,
        timeout_ms: int | None = None,
    ) -> EvalResult:
        """Send *input* to the worker via ``<worker> eval``.

        Args:
            input: Expression or handler name to evaluate.
            await_response: Pass ``--await`` so the worker waits for the
                result message.
            timeout_ms: Passed as ``--timeout``; also bounds how long we wait
                for the command (plus a one-second grace).  Without it the
                supervisor's ``eval_timeout`` applies.

        Raises:
            EvalTimeout: If the command does not exit in time (it is killed).
            EvalNonZeroExit: If the command exits non-zero.
            SpawnFailed: If the executable cannot be run.
        """
        args = ["eval", input]
        if await_response:
            args.append("--await")
        if timeout_ms is not None:
            args.extend(["--timeout", str(timeout_ms)])
        wait_seconds = (
            timeout_ms / 1000 + EVAL_GRACE_SECONDS
            if timeout_ms is not None
            else self.eval_timeout
        )
        name = self._tracked_name()

        async with self._eval_lock:
            started = time.monotonic()
            try:
                code, stdout, stderr = await self._run_worker(
                    "eval", args, process_name=name, capture=True, timeout=wait_seconds
                )
            except asyncio.TimeoutError:
                raise EvalTimeout(
                    f"eval {input!r} did not finish within {wait_seconds:g}s",
                    timeout=wait_seconds,
                    process_name=name,
                ) from None
            duration = time.monotonic() - started

        if code != 0:
            detail = f": {stderr}" if stderr else ""
            raise EvalNonZeroExit(
                f"eval {input!r} failed (exit {code}){detail}",
                operation="eval",
                process_name=name,
                returncode=code,
                stderr=stderr,
            )
        return EvalResult(exit_code=code, stdout=stdout, stderr=stderr, duration_seconds=duration)

    async def monitor(
        self,
        name: str | None = None,
        pattern: str | None = None,
        json_output: bool = False,
    ) -> None:
        """Attach ``<worker> monitor`` to the terminal until it exits.

        The name defaults to the tracked worker's name.
        """
        name = name or self._tracked_name()
        args = ["monitor"]
        if name:
            args.append(name)
        if pattern:
            args.extend(["--pattern", pattern])
        if json_output:
            args.append("--json")

        console.print(f"\n[blue]Monitoring AO process {name or ''}...[/blue]")
        result = await self._run_worker("monitor", args, process_name=name)
        self._check_exit("monitor", result, name)

    async def watch(
        self,
        name: str,
        pattern: str = "*",
        timeout_ms: int | None = None,
        count: int | None = None,
    ) -> None:
        """Run ``<worker> watch`` for messages matching *pattern*."""
        args = ["watch", name, pattern]
        if timeout_ms is not None:
            args.extend(["--timeout", str(timeout_ms)])
        if count is not None:
            args.extend(["--count", str(count)])

        console.print(f"\n[blue]Watching AO process: {name}[/blue]")
        result = await self._run_worker("watch", args, process_name=name)
        self._check_exit("watch", result, name)

    async def cron(self, name: str, frequency: str) -> None:
        """Set up a cron for *name* with ``<worker> <name> --cron <frequency>``."""
        console.print(
            f"\n[blue]Setting up cron for process {name} with frequency {frequency}[/blue]"
        )
        result = await self._run_worker("cron", [name, "--cron", frequency], process_name=name)
        self._check_exit("cron", result, name)

    async def list(self, pattern: str | None = None) -> Iterator[ProcessDescriptor]:
        """Run ``<worker> list`` and parse one descriptor per output line.

        Args:
            pattern: Optional wildcard pattern; only names that match it are
                yielded.

        Returns:
            A lazy, single-use iterator of ``ProcessDescriptor``.
        """
        try:
            result = await self._run_worker(
                "list", ["list"], capture=True, timeout=self.eval_timeout
            )
        except asyncio.TimeoutError:
            raise WorkerCommandFailed(
                f"`list` did not finish within {self.eval_timeout:g}s",
                operation="list",
            ) from None
        self._check_exit("list", result, None)
        _, stdout, _ = result
        matcher = compile_pattern(pattern) if pattern else None

        def _descriptors() -> Iterator[ProcessDescriptor]:
            for line in stdout.splitlines():
                descriptor = parse_process_line(line)
                if descriptor is None:
                    continue
                if matcher is not None and not matcher.test(descriptor.name):
                    continue
                yield descriptor

        return _descriptors()

    def find_worker_files(self, root: str | Path) -> list[str]:
        """Worker source files under *root* (see module ``find_worker_files``)."""
        return find_worker_files(root)
