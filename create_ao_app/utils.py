"""Shared utility functions for create-ao-app.

Provides async command execution, executable discovery, Rich-based console
output, readiness-duration formatting, and health-check polling.  The process
subsystem builds on these helpers rather than talking to ``asyncio`` or
``httpx`` directly wherever a one-shot command is enough.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from collections.abc import Mapping
from pathlib import Path

import httpx
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

console = Console()
err_console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


async def run_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = 120,
    capture: bool = True,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run *cmd* to completion and return ``(returncode, stdout, stderr)``.

    The worker's one-shot commands (``eval``, ``cron``, ``list``) go through
    here.  With ``capture=False`` the child writes straight to the terminal
    and both strings come back empty.  *env* is layered over ``os.environ``.

    Raises:
        FileNotFoundError: If the executable does not exist.
        PermissionError: If the executable cannot be run.
        asyncio.TimeoutError: If the process outlives *timeout*.  The process
            is killed and reaped before the error propagates.
    """
    pipe = asyncio.subprocess.PIPE if capture else None
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=pipe,
        stderr=pipe,
        cwd=str(cwd) if cwd else None,
        env={**os.environ, **env} if env else None,
    )

    try:
        out, err = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise

    return (process.returncode or 0, _decode(out), _decode(err))


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace").strip()


# ---------------------------------------------------------------------------
# Executable discovery
# ---------------------------------------------------------------------------


def is_command_available(command: str) -> bool:
    """Return ``True`` if *command* resolves to an executable on ``PATH``."""
    return shutil.which(command) is not None


def detect_package_manager() -> str:
    """Return the first installed package manager, preferring pnpm.

    Falls back to ``npm`` when none of them can be found.
    """
    for manager in ("pnpm", "yarn", "npm"):
        if is_command_available(manager):
            return manager
    return "npm"


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Render a readiness wait or timeout for console messages.

    Dev servers often announce themselves in well under a second, so short
    waits are shown in milliseconds; the default five-minute readiness
    budget reads as ``5m 0s``.
    """
    if seconds < 1:
        return f"{max(seconds, 0.0) * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def print_settings_table(rows: Mapping[str, object], title: str) -> None:
    """Print resolved settings as a two-column table.

    ``Path`` values are marked when nothing exists there yet, which is the
    normal state of a record file while no worker or scheduler runs.
    """
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="dim", no_wrap=True)
    table.add_column("Value", overflow="fold")

    for label, value in rows.items():
        cell = Text(str(value))
        if isinstance(value, Path) and not value.exists():
            cell.append(" (not created yet)", style="dim")
        table.add_row(label, cell)

    console.print(table)


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{escape(message)}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message to stderr."""
    err_console.print(f"[bold red]{escape(message)}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{escape(message)}[/bold yellow]")


# ---------------------------------------------------------------------------
# Health-check polling
# ---------------------------------------------------------------------------


async def wait_for_health(
    url: str,
    timeout: float = 60,
    interval: float = 2,
) -> bool:
    """Poll a URL until it responds with HTTP 200 or timeout.

    Used to confirm that a dev server announcing itself on stdout actually
    accepts connections.

    Args:
        url: Fully-qualified URL (e.g. ``http://localhost:3000/``).
        timeout: Maximum seconds to wait.
        interval: Seconds between probes.

    Returns:
        ``True`` if a 200 response was received within the timeout window,
        ``False`` otherwise.
    """
    deadline = time.monotonic() + timeout

    async with httpx.AsyncClient(timeout=httpx.Timeout(5.0, connect=3.0)) as client:
        while time.monotonic() < deadline:
            try:
                response = await client.get(url)
                if response.status_code == 200:
                    return True
            except httpx.TransportError:
                pass

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

    return False
