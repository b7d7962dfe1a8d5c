"""Small asyncio helpers shared by the tick loops."""

from __future__ import annotations

import asyncio


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    """Sleep *seconds*, returning early if *stop_event* is set."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def wait_for_any(*events: asyncio.Event, timeout: float | None = None) -> None:
    """Return once any of *events* is set, or after *timeout* seconds."""
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
