"""Readiness detection on streamed subprocess output.

``await_signal`` watches chunks of text as a process produces them and
returns as soon as a marker (for example ``http://localhost:``) shows up.
Only a short tail of the previous chunk is retained so that a marker split
across two reads is still found; the stream as a whole is never buffered.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass

from create_ao_app.process.errors import ReadinessStreamClosed, ReadinessTimeout


@dataclass
class ReadinessResult:
    """Outcome of a successful ``await_signal`` call."""

    text: str
    elapsed: float


async def _from_sync(chunks: Iterable[str]) -> AsyncIterator[str]:
    for chunk in chunks:
        yield chunk


def _chunks(stream: AsyncIterable[str] | Iterable[str]) -> AsyncIterator[str]:
    if isinstance(stream, AsyncIterable):
        return aiter(stream)
    return _from_sync(stream)


async def await_signal(
    stream: AsyncIterable[str] | Iterable[str],
    signal: str,
    timeout: float,
) -> ReadinessResult:
    """Wait until *signal* appears in *stream*.

    Args:
        stream: Text chunks in arrival order (sync or async iterable).
        signal: Substring that marks readiness.
        timeout: Seconds to wait before giving up.

    Returns:
        A ``ReadinessResult`` with the text the signal was found in (the
        matching chunk plus any carried-over tail) and the elapsed seconds.

    Raises:
        ReadinessTimeout: If *timeout* elapses first.  The stream is left
            open; closing it is up to the caller.
        ReadinessStreamClosed: If the stream ends without the signal.
        ValueError: If *signal* is empty.
    """
    if not signal:
        raise ValueError("Readiness signal must not be empty")

    started = time.monotonic()
    keep = len(signal) - 1

    async def _observe() -> str:
        carry = ""
        async for chunk in _chunks(stream):
            window = carry + chunk
            if signal in window:
                return window
            carry = window[-keep:] if keep else ""
        elapsed = time.monotonic() - started
        raise ReadinessStreamClosed(
            f"Output ended after {elapsed:.1f}s without readiness signal {signal!r}",
            elapsed=elapsed,
        )

    try:
        text = await asyncio.wait_for(_observe(), timeout=timeout)
    except asyncio.TimeoutError:
        elapsed = time.monotonic() - started
        raise ReadinessTimeout(
            f"Readiness signal {signal!r} not seen within {timeout:g}s",
            elapsed=elapsed,
        ) from None

    return ReadinessResult(text=text, elapsed=time.monotonic() - started)
