"""Fixed-interval loop driver that stops on a shared event."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


async def run_every(
    name: str,
    interval: float,
    stop: asyncio.Event,
    tick: Callable[[], Awaitable[Any]],
) -> None:
    """Call tick() now and then every `interval` seconds until stop is set.

    A failing tick is logged and the loop carries on with the next one. A tick
    in progress is never interrupted; stop takes effect between ticks.
    """
    logger.info("loop_starting", loop=name, interval=interval)
    while not stop.is_set():
        try:
            await tick()
        except Exception as e:
            logger.exception("loop_tick_failed", loop=name, error=str(e))

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("loop_stopped", loop=name)
