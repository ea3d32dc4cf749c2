"""Stop-aware sleeping shared by the supervisor, poll cycle and sync pass."""

import asyncio

from mailrelay.agent.errors import Cancelled


def check_cancelled(stop: asyncio.Event) -> None:
    """Raise Cancelled if the stop signal has been raised."""
    if stop.is_set():
        raise Cancelled("stop requested")


async def pause(stop: asyncio.Event, seconds: float) -> None:
    """Sleep for `seconds`, waking immediately if `stop` is set.

    Raises:
        Cancelled: if the stop signal was raised before or during the sleep.
    """
    check_cancelled(stop)
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise Cancelled("stop requested")
