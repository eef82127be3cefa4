"""Periodic ticking of the worker process.

A ``Scheduler`` calls ``ProcessSupervisor.evaluate(tick)`` once per
interval.  Consecutive failures are tolerated up to ``max_retries``; the
failure that reaches the limit stops the scheduler and then runs the
configured error handler once.

Ticks never overlap: the next interval starts counting when the previous
tick has finished.
"""

from __future__ import annotations

import asyncio
from enum import Enum

from create_ao_app.config import SchedulerConfig
from create_ao_app.process.errors import ProcessError, SchedulerAlreadyRunning
from create_ao_app.process.supervisor import ProcessSupervisor
from create_ao_app.utils import console, print_error


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class Scheduler:
    """Drives ``tick`` on a supervised worker at a fixed interval.

    Attributes:
        supervisor: The supervisor whose ``evaluate`` runs each tick.
        interval_ms: Milliseconds between ticks; also the per-tick timeout.
        tick: Name of the operation evaluated on every tick.
        max_retries: Consecutive failures allowed before escalating.
        on_error: Operation evaluated once when the limit is reached.
        process_name: Used only in messages.
        escalated: True once the retry limit stopped the scheduler.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        interval_ms: int = 1000,
        tick: str = "tick",
        max_retries: int = 3,
        on_error: str = "handleError",
        process_name: str | None = None,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError(f"interval must be positive, got {interval_ms}")
        if max_retries < 0:
            raise ValueError(f"max_retries must not be negative, got {max_retries}")

        self.supervisor = supervisor
        self.interval_ms = interval_ms
        self.tick = tick
        self.max_retries = max_retries
        self.on_error = on_error
        self.process_name = process_name

        self._task: asyncio.Task[None] | None = None
        self._last_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._failures = 0
        self.escalated = False

    @classmethod
    def from_config(
        cls,
        supervisor: ProcessSupervisor,
        config: SchedulerConfig,
        process_name: str | None = None,
    ) -> "Scheduler":
        return cls(
            supervisor,
            interval_ms=config.interval,
            tick=config.tick,
            max_retries=config.max_retries,
            on_error=config.on_error,
            process_name=process_name,
        )

    @property
    def state(self) -> SchedulerState:
        return SchedulerState.RUNNING if self._task is not None else SchedulerState.STOPPED

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def is_running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        """Begin ticking.  Must be called from within a running event loop.

        Raises:
            SchedulerAlreadyRunning: If the scheduler is already running.
        """
        if self._task is not None:
            raise SchedulerAlreadyRunning(
                f"Scheduler for '{self.tick}' is already running",
                operation="schedule",
                process_name=self.process_name,
            )
        self._failures = 0
        self.escalated = False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(self._stop_event), name=f"scheduler-{self.tick}"
        )
        self._last_task = self._task
        console.print(
            f"[cyan]Scheduler started:[/cyan] '{self.tick}' every {self.interval_ms}ms "
            f"(max retries {self.max_retries}, on error '{self.on_error}')"
        )

    def stop(self) -> None:
        """Stop future ticks and reset the failure counter.

        A tick already in flight runs to completion.  Safe to call when the
        scheduler is not running.
        """
        if self._stop_event is not None:
            self._stop_event.set()
        self._stop_event = None
        self._task = None
        self._failures = 0

    async def wait(self) -> None:
        """Wait until the control loop has exited."""
        task = self._task or self._last_task
        if task is not None:
            await task

    async def _run(self, stop_event: asyncio.Event) -> None:
        interval = self.interval_ms / 1000
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            await self._tick(stop_event)

    async def _tick(self, stop_event: asyncio.Event) -> None:
        try:
            await self.supervisor.evaluate(
                self.tick, await_response=True, timeout_ms=self.interval_ms
            )
        except ProcessError as exc:
            if stop_event.is_set():
                return
            self._failures += 1
            print_error(f"Error in scheduler for {self.process_name or self.tick}: {exc}")
            if self._failures >= self.max_retries:
                await self._escalate()
            return

        if not stop_event.is_set():
            self._failures = 0

    async def _escalate(self) -> None:
        print_error(f"Max retries ({self.max_retries}) reached, stopping scheduler")
        self.escalated = True
        self.stop()
        try:
            await self.supervisor.evaluate(self.on_error)
        except ProcessError as exc:
            print_error(f"Error handler '{self.on_error}' failed: {exc}")
