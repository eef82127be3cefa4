"""Command-line front end for create-ao-app.

Every sub-command builds its objects from ``Settings.from_env()`` and the
project's ``ao.config.yml``, runs one coroutine, and turns any
``ProcessError`` into a message on stderr and exit status 1.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable

from rich.console import Console
from rich.table import Table

from create_ao_app import __version__
from create_ao_app.config import SchedulerConfig, Settings, load_config
from create_ao_app.process.devserver import DevServerSequencer
from create_ao_app.process.errors import ProcessError, SchedulerAlreadyRunning
from create_ao_app.process.launch import LaunchSpec
from create_ao_app.process.records import RecordStore, ScheduleRecord, pid_alive
from create_ao_app.process.scheduler import Scheduler
from create_ao_app.process.supervisor import ProcessSupervisor, find_worker_files
from create_ao_app.utils import (
    detect_package_manager,
    format_duration,
    print_error,
    print_settings_table,
    print_success,
    print_warning,
)

console = Console()

Handler = Callable[[argparse.Namespace, Settings], Awaitable[int]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tag_pairs(args: argparse.Namespace) -> list[tuple[str, str]]:
    names = args.tag_name or []
    values = args.tag_value or []
    if len(names) != len(values):
        raise ValueError(
            f"--tag-name and --tag-value must be given in pairs "
            f"(got {len(names)} names and {len(values)} values)"
        )
    return list(zip(names, values))


def _install_stop_handlers(callback: Callable[[], None]) -> None:
    """Call *callback* on SIGINT/SIGTERM instead of raising in the loop."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, callback)


def _remove_stop_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    config = load_config(args.path)
    spec = LaunchSpec.from_options(
        config,
        name=args.name,
        wallet=args.wallet,
        load=args.load,
        data=args.data,
        tags=_tag_pairs(args),
        module=args.module,
        cron=args.cron,
        monitor=args.monitor,
        sqlite=args.sqlite,
        gateway_url=args.gateway_url,
        cu_url=args.cu_url,
        mu_url=args.mu_url,
    )
    supervisor = ProcessSupervisor.from_settings(settings)
    await supervisor.start(args.path, config, spec)
    code = await supervisor.wait()
    return code or 0


async def cmd_dev(args: argparse.Namespace, settings: Settings) -> int:
    config = load_config(args.path)
    supervisor = ProcessSupervisor.from_settings(settings)
    sequencer = DevServerSequencer.from_settings(
        supervisor, settings, verify_url=args.verify_url
    )
    if args.timeout is not None:
        sequencer.timeout = args.timeout

    start_worker = False if args.no_worker else None
    spec = LaunchSpec.from_options(config, name=args.name)
    handle = await sequencer.run(args.path, config, spec, start_worker=start_worker)

    scheduler: Scheduler | None = None
    if args.schedule and handle.worker is not None:
        scheduler = Scheduler.from_config(
            supervisor, config.scheduler or SchedulerConfig(), process_name=handle.worker.name
        )
        scheduler.start()

    stop_requested = asyncio.Event()
    _install_stop_handlers(stop_requested.set)
    try:
        server_task = asyncio.create_task(sequencer.wait())
        stop_task = asyncio.create_task(stop_requested.wait())
        watched = {server_task, stop_task}
        worker_task: asyncio.Task | None = None
        if handle.worker is not None:
            worker_task = asyncio.create_task(supervisor.wait())
            watched.add(worker_task)
        done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        if scheduler is not None:
            scheduler.stop()
        if stop_task in done:
            console.print("\n[yellow]Shutting down...[/yellow]")
            await sequencer.shutdown()
            await server_task
            if worker_task is not None:
                worker_task.cancel()
            return 0

        stop_task.cancel()
        if server_task not in done:
            # The worker went away first; the dev server is not useful alone.
            code = worker_task.result()
            print_warning(f"AO process exited with code {code}; stopping the dev server")
            await sequencer.shutdown()
            await server_task
            return 1 if code else 0

        if worker_task is not None:
            worker_task.cancel()
        code = server_task.result()
        print_warning(f"Dev server exited with code {code}")
        if supervisor.is_running():
            supervisor.stop()
        return code or 0
    finally:
        _remove_stop_handlers()


async def cmd_monitor(args: argparse.Namespace, settings: Settings) -> int:
    supervisor = ProcessSupervisor.from_settings(settings)
    await supervisor.monitor(args.name, pattern=args.pattern, json_output=args.json)
    return 0


async def cmd_watch(args: argparse.Namespace, settings: Settings) -> int:
    supervisor = ProcessSupervisor.from_settings(settings)
    await supervisor.watch(
        args.name, pattern=args.pattern, timeout_ms=args.timeout, count=args.count
    )
    return 0


async def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    supervisor = ProcessSupervisor.from_settings(settings)
    descriptors = list(await supervisor.list(args.pattern))
    if not descriptors:
        console.print("[dim]No AO processes found.[/dim]")
        return 0

    table = Table(title="AO Processes", show_header=True, header_style="bold cyan")
    table.add_column("Name", no_wrap=True)
    table.add_column("Process ID")
    for descriptor in descriptors:
        table.add_row(descriptor.name, descriptor.process_id or "-")
    console.print(table)
    return 0


async def cmd_cron(args: argparse.Namespace, settings: Settings) -> int:
    supervisor = ProcessSupervisor.from_settings(settings)
    await supervisor.cron(args.name, args.frequency)
    print_success(f"Cron set for {args.name} every {args.frequency}")
    return 0


async def cmd_schedule(args: argparse.Namespace, settings: Settings) -> int:
    store = RecordStore(settings.schedule_file, ScheduleRecord)
    existing = store.read()
    if existing is not None and existing.pid != os.getpid() and pid_alive(existing.pid):
        raise SchedulerAlreadyRunning(
            f"A scheduler is already running (pid {existing.pid}). "
            "Run `schedule-stop` first.",
            operation="schedule",
            process_name=existing.process_name,
        )

    config = load_config(args.path)
    base = config.scheduler or SchedulerConfig()
    supervisor = ProcessSupervisor.from_settings(settings)
    record = supervisor.current_record()
    process_name = args.name or (record.name if record else config.process_name)

    scheduler = Scheduler(
        supervisor,
        interval_ms=args.interval if args.interval is not None else base.interval,
        tick=args.tick or base.tick,
        max_retries=args.max_retries if args.max_retries is not None else base.max_retries,
        on_error=args.on_error or base.on_error,
        process_name=process_name,
    )

    store.write(
        ScheduleRecord(
            pid=os.getpid(),
            process_name=process_name,
            interval=scheduler.interval_ms,
            tick=scheduler.tick,
        )
    )
    _install_stop_handlers(scheduler.stop)
    try:
        scheduler.start()
        await scheduler.wait()
    finally:
        _remove_stop_handlers()
        current = store.read()
        if current is not None and current.pid == os.getpid():
            store.clear()

    if scheduler.escalated:
        return 1
    console.print("[yellow]Scheduler stopped.[/yellow]")
    return 0


async def cmd_schedule_stop(args: argparse.Namespace, settings: Settings) -> int:
    store = RecordStore(settings.schedule_file, ScheduleRecord)
    record = store.read()
    if record is None:
        console.print("[dim]No scheduler is running.[/dim]")
        return 0

    try:
        if pid_alive(record.pid):
            os.kill(record.pid, signal.SIGTERM)
            print_success(f"Stopped scheduler for {record.process_name} (pid {record.pid})")
        else:
            print_warning(f"Scheduler pid {record.pid} was not running.")
    except OSError as exc:
        print_warning(f"Could not signal scheduler (pid {record.pid}): {exc}")
    finally:
        store.clear()
    return 0


async def cmd_eval(args: argparse.Namespace, settings: Settings) -> int:
    supervisor = ProcessSupervisor.from_settings(settings)
    result = await supervisor.evaluate(
        args.input, await_response=args.await_response, timeout_ms=args.timeout
    )
    if result.stdout:
        console.out(result.stdout, highlight=False)
    return 0


async def cmd_stop(args: argparse.Namespace, settings: Settings) -> int:
    supervisor = ProcessSupervisor.from_settings(settings)
    if supervisor.current_record() is None:
        console.print("[dim]No AO process is running.[/dim]")
        return 0
    return 0 if supervisor.stop() else 1


async def cmd_files(args: argparse.Namespace, settings: Settings) -> int:
    root = Path(args.path)
    if not root.is_dir():
        print_error(f"Not a directory: {root}")
        return 1
    files = sorted(find_worker_files(root))
    if not files:
        console.print("[dim]No Lua files found.[/dim]")
        return 0
    for name in files:
        console.print(name, highlight=False, markup=False)
    return 0


async def cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    supervisor = ProcessSupervisor.from_settings(settings)
    installed = supervisor.check_installation()
    print_settings_table(
        {
            "Worker": settings.worker_binary,
            "Package manager": detect_package_manager(),
            "Readiness timeout": format_duration(settings.readiness_timeout),
            "Process record": settings.process_file,
            "Schedule record": settings.schedule_file,
        },
        title="create-ao-app",
    )
    return 0 if installed else 1


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="create-ao-app",
        description="create-ao-app -- run AO processes alongside your web project",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  create-ao-app start --load process.lua\n"
            "  create-ao-app dev ./my-app\n"
            "  create-ao-app eval 'Send({Target = ao.id, Action = \"Info\"})' --await\n"
            "  create-ao-app schedule --interval 5000 --tick tick\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.required = True

    # start
    p = sub.add_parser("start", help="Start the AO process in the foreground")
    p.add_argument("path", nargs="?", default=".", help="Project directory (default: .)")
    p.add_argument("--name", "-n", default=None, help="Process name (default: processName)")
    p.add_argument("--wallet", "-w", default=None, help="Path to wallet file")
    p.add_argument(
        "--load", "-l", action="append", default=None,
        help="Lua file to load (repeatable; default: luaFiles)",
    )
    p.add_argument("--data", default=None, help="Path to data file")
    p.add_argument("--tag-name", action="append", default=None, help="Tag name (repeatable)")
    p.add_argument("--tag-value", action="append", default=None, help="Tag value (repeatable)")
    p.add_argument("--module", "-m", default=None, help="Module ID")
    p.add_argument("--cron", default=None, help="Cron frequency, e.g. 1-minute")
    p.add_argument("--monitor", action="store_true", default=None, help="Monitor the process")
    p.add_argument("--sqlite", action="store_true", help="Use the sqlite3 module")
    p.add_argument("--gateway-url", default=None, help="Gateway URL")
    p.add_argument("--cu-url", default=None, help="Compute unit URL")
    p.add_argument("--mu-url", default=None, help="Messenger unit URL")
    p.set_defaults(handler=cmd_start)

    # dev
    p = sub.add_parser("dev", help="Start the dev server, then the AO process")
    p.add_argument("path", nargs="?", default=".", help="Project directory (default: .)")
    p.add_argument("--name", "-n", default=None, help="Process name (default: processName)")
    p.add_argument("--no-worker", action="store_true", help="Do not start the AO process")
    p.add_argument(
        "--timeout", type=float, default=None,
        help="Seconds to wait for the dev server (default: AO_READINESS_TIMEOUT or 300)",
    )
    p.add_argument(
        "--verify-url", action="store_true", help="Poll the dev server URL until it answers"
    )
    p.add_argument(
        "--schedule", action="store_true",
        help="Also run the scheduler from ao.config.yml against the process",
    )
    p.set_defaults(handler=cmd_dev)

    # monitor
    p = sub.add_parser("monitor", help="Monitor an AO process")
    p.add_argument("name", nargs="?", default=None, help="Process name (default: running one)")
    p.add_argument("--pattern", default=None, help="Only show messages matching this pattern")
    p.add_argument("--json", action="store_true", help="Emit JSON")
    p.set_defaults(handler=cmd_monitor)

    # watch
    p = sub.add_parser("watch", help="Watch an AO process for messages")
    p.add_argument("name", help="Process name")
    p.add_argument("pattern", nargs="?", default="*", help="Message pattern (default: *)")
    p.add_argument("--timeout", type=int, default=None, help="Timeout in milliseconds")
    p.add_argument("--count", type=int, default=None, help="Stop after this many messages")
    p.set_defaults(handler=cmd_watch)

    # list
    p = sub.add_parser("list", help="List AO processes")
    p.add_argument("--pattern", default=None, help="Only list names matching this pattern")
    p.set_defaults(handler=cmd_list)

    # cron
    p = sub.add_parser("cron", help="Set up a cron for an AO process")
    p.add_argument("name", help="Process name")
    p.add_argument("frequency", help="Cron frequency, e.g. 10-minutes")
    p.set_defaults(handler=cmd_cron)

    # schedule
    p = sub.add_parser("schedule", help="Tick the AO process at a fixed interval")
    p.add_argument("path", nargs="?", default=".", help="Project directory (default: .)")
    p.add_argument("--interval", "-i", type=int, default=None, help="Interval in milliseconds")
    p.add_argument("--tick", "-t", default=None, help="Tick operation (default: tick)")
    p.add_argument("--max-retries", type=int, default=None, help="Failures before escalating")
    p.add_argument("--on-error", default=None, help="Error operation (default: handleError)")
    p.add_argument("--name", "-n", default=None, help="Process name shown in messages")
    p.set_defaults(handler=cmd_schedule)

    # schedule-stop
    p = sub.add_parser("schedule-stop", help="Stop a running scheduler")
    p.set_defaults(handler=cmd_schedule_stop)

    # eval
    p = sub.add_parser("eval", help="Evaluate input in the AO process")
    p.add_argument("input", help="Lua expression or handler name")
    p.add_argument(
        "--await", dest="await_response", action="store_true", help="Wait for the response"
    )
    p.add_argument("--timeout", type=int, default=None, help="Timeout in milliseconds")
    p.set_defaults(handler=cmd_eval)

    # stop
    p = sub.add_parser("stop", help="Stop the running AO process")
    p.set_defaults(handler=cmd_stop)

    # files
    p = sub.add_parser("files", help="List Lua files in a project")
    p.add_argument("path", nargs="?", default=".", help="Directory to scan (default: .)")
    p.set_defaults(handler=cmd_files)

    # check
    p = sub.add_parser("check", help="Check that the aos CLI is installed")
    p.set_defaults(handler=cmd_check)

    return parser


def run(argv: list[str] | None = None) -> int:
    """Parse *argv*, run the selected command, and return its exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    handler: Handler = args.handler

    try:
        settings = Settings.from_env()
        return asyncio.run(handler(args, settings))
    except ProcessError as exc:
        print_error(f"Error: {exc}")
        return 1
    except ValueError as exc:
        print_error(f"Error: {exc}")
        return 2
    except KeyboardInterrupt:
        return 130


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``create-ao-app`` and ``python -m create_ao_app``."""
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
