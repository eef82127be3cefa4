"""Dev server start-up sequencing.

Runs ``<package manager> run dev`` for the project, waits until the server
prints its local URL, and only then hands over to the ``ProcessSupervisor``
to start the worker.  If the server never comes up, or exits first, the
worker is not started.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import re
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from create_ao_app.config import AOConfig, Settings
from create_ao_app.process.errors import (
    DevServerExited,
    ProcessError,
    ReadinessStreamClosed,
    ReadinessTimeout,
    SpawnFailed,
)
from create_ao_app.process.launch import LaunchSpec
from create_ao_app.process.readiness import ReadinessResult, await_signal
from create_ao_app.process.supervisor import ProcessSupervisor, RunningHandle
from create_ao_app.utils import format_duration, print_success, print_warning, wait_for_health

console = Console()

DEFAULT_SIGNAL = "http://localhost:"
DEFAULT_TIMEOUT = 300.0
# How long to wait for the rest of the line that announced the URL.
URL_LINE_GRACE = 1.0

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_LOCAL_URL_RE = re.compile(r"https?://(?:localhost|127\.0\.0\.1)(?::\d+)?[^\s\"'<>]*")


def extract_url(text: str) -> str | None:
    """Return the first loopback URL in *text*, ignoring terminal colours."""
    match = _LOCAL_URL_RE.search(_ANSI_RE.sub("", text))
    return match.group(0).rstrip(".,;)") if match else None


async def read_chunks(
    stream: asyncio.StreamReader,
    size: int = 4096,
    echo: bool = True,
) -> AsyncIterator[str]:
    """Yield decoded chunks from *stream* until EOF, echoing them if asked."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(size)
        if not data:
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
            return
        text = decoder.decode(data)
        if not text:
            continue
        if echo:
            console.out(text, end="", highlight=False)
        yield text


@dataclass
class DevServerHandle:
    """A dev server that reached readiness, plus the worker started after it."""

    process: asyncio.subprocess.Process = field(repr=False)
    command: list[str]
    readiness: ReadinessResult
    url: str | None = None
    worker: RunningHandle | None = None


class DevServerSequencer:
    """Starts the dev server, waits for it, then starts the worker.

    Attributes:
        supervisor: Supervisor used to start (and on shutdown, stop) the worker.
        ready_signal: Text in the dev server's output that marks it as reachable.
        timeout: Seconds to wait for *ready_signal*.
        verify_url: After the ready signal, also poll the announced URL over HTTP.
        health_timeout: Seconds to poll the URL when *verify_url* is set.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        ready_signal: str = DEFAULT_SIGNAL,
        timeout: float = DEFAULT_TIMEOUT,
        verify_url: bool = False,
        health_timeout: float = 30.0,
    ) -> None:
        self.supervisor = supervisor
        self.ready_signal = ready_signal
        self.timeout = timeout
        self.verify_url = verify_url
        self.health_timeout = health_timeout
        self._handle: DevServerHandle | None = None
        self._drain_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        supervisor: ProcessSupervisor,
        settings: Settings,
        verify_url: bool = False,
    ) -> "DevServerSequencer":
        return cls(
            supervisor,
            ready_signal=settings.readiness_signal,
            timeout=settings.readiness_timeout,
            verify_url=verify_url,
        )

    @property
    def handle(self) -> DevServerHandle | None:
        return self._handle

    def build_command(self, config: AOConfig) -> list[str]:
        return [config.package_manager, "run", "dev"]

    def build_env(self, config: AOConfig) -> dict[str, str]:
        """Environment overlay for the dev server: config ``env`` plus PORT."""
        return {**config.env, "PORT": str(config.ports.dev)}

    async def run(
        self,
        path: str | Path,
        config: AOConfig,
        launch_spec: LaunchSpec | None = None,
        start_worker: bool | None = None,
    ) -> DevServerHandle:
        """Run the full start sequence.

        Args:
            path: Project directory.
            config: Project configuration.
            launch_spec: Worker parameters; derived from *config* if omitted.
            start_worker: Start the worker once ready.  Defaults to the
                config's ``runWithAO``.

        Returns:
            The ``DevServerHandle``.  The dev server keeps running; use
            ``wait`` or ``shutdown``.

        Raises:
            SpawnFailed: If the package manager cannot be run.
            ReadinessTimeout: If the server did not announce itself in time.
            DevServerExited: If the server exited before becoming ready.
            ProcessError: If starting the worker failed.  The dev server is
                terminated in every failure case.
        """
        if start_worker is None:
            start_worker = config.run_with_ao
        cwd = Path(path).resolve()
        cmd = self.build_command(config)

        console.print(
            Panel(
                f"[cyan]Starting dev server[/cyan]\n"
                f"  Directory: {cwd}\n"
                f"  Command: {' '.join(cmd)}\n"
                f"  Port: {config.ports.dev}\n"
                f"  Waiting for: {self.ready_signal} (up to {format_duration(self.timeout)})",
                title="Dev Server",
                border_style="cyan",
            )
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd),
                env={**os.environ, **self.build_env(config)},
                # New process group so the whole dev server tree can be signalled.
                start_new_session=True,
            )
        except FileNotFoundError:
            raise SpawnFailed(
                f"Package manager not found: '{config.package_manager}'",
                operation="dev",
            ) from None
        except OSError as exc:
            raise SpawnFailed(f"Failed to start dev server: {exc}", operation="dev") from exc

        assert process.stdout is not None  # guaranteed by PIPE
        chunks = read_chunks(process.stdout)

        try:
            readiness = await await_signal(chunks, self.ready_signal, self.timeout)
        except ReadinessTimeout:
            await self._terminate(process)
            raise
        except ReadinessStreamClosed as exc:
            # Closing stdout does not mean the server is gone; give it the
            # rest of the readiness budget to exit, then take the group down.
            remaining = max(self.timeout - exc.elapsed, 0.0)
            try:
                code = await asyncio.wait_for(process.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                await self._terminate(process)
                raise DevServerExited(
                    "Dev server closed its output before it became ready and was stopped",
                    returncode=process.returncode,
                ) from exc
            raise DevServerExited(
                f"Dev server exited with code {code} before it became ready",
                returncode=code,
            ) from exc

        # The URL may continue in a later chunk; let the drain task collect
        # the rest of the announcing line before extracting it.
        line = [readiness.text]
        line_done = asyncio.Event()
        if "\n" in readiness.text[readiness.text.rfind(self.ready_signal):]:
            line_done.set()
        self._drain_task = asyncio.create_task(
            self._drain(chunks, line, line_done), name="dev-server-output"
        )
        try:
            await asyncio.wait_for(line_done.wait(), timeout=URL_LINE_GRACE)
        except asyncio.TimeoutError:
            line_done.set()

        url = extract_url("".join(line))
        print_success(
            f"Dev server ready at {url or self.ready_signal} ({format_duration(readiness.elapsed)})"
        )

        if self.verify_url and url:
            if not await wait_for_health(url, timeout=self.health_timeout):
                print_warning(f"{url} did not answer with HTTP 200 within {self.health_timeout:g}s")

        handle = DevServerHandle(process=process, command=cmd, readiness=readiness, url=url)
        self._handle = handle

        if start_worker:
            spec = launch_spec or LaunchSpec.from_options(config)
            try:
                handle.worker = await self.supervisor.start(cwd, config, spec)
            except ProcessError:
                await self.shutdown()
                raise

        return handle

    async def wait(self) -> int | None:
        """Wait for the dev server to exit; returns its exit code."""
        if self._handle is None:
            return None
        code = await self._handle.process.wait()
        if self._drain_task is not None:
            await self._drain_task
        return code

    async def shutdown(self) -> None:
        """Terminate the dev server and stop the worker it started."""
        if self._handle is not None:
            await self._terminate(self._handle.process)
        if self._handle is not None and self._handle.worker is not None:
            self.supervisor.stop()

    @staticmethod
    async def _drain(
        chunks: AsyncIterator[str], line: list[str], line_done: asyncio.Event
    ) -> None:
        # Keep reading so the dev server never blocks on a full pipe.  Chunks
        # are collected into *line* until it ends or *line_done* is set.
        try:
            async for chunk in chunks:
                if not line_done.is_set():
                    line.append(chunk)
                    if "\n" in chunk:
                        line_done.set()
        finally:
            line_done.set()

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process, timeout: float = 10.0) -> None:
        """SIGTERM the dev server's process group, escalating to SIGKILL."""
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
            await process.wait()
