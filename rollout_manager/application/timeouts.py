"""Helpers for bounding blocking port calls."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, TypeVar

from rollout_manager.errors import ClusterCommandError, RolloutCancelled

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: object, timeout: float) -> T:
    """Run a blocking call in a worker thread, giving up after ``timeout`` seconds.

    The worker thread itself is not interrupted; transports are expected to
    carry their own timeout as well.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        name = getattr(func, "__name__", "call")
        raise ClusterCommandError(f"{name} timed out after {timeout:g}s") from exc


async def pause(delay: float, cancel: Optional[asyncio.Event] = None) -> None:
    """Sleep for ``delay`` seconds, raising RolloutCancelled as soon as ``cancel`` is set."""
    if cancel is None:
        await asyncio.sleep(delay)
        return
    if cancel.is_set():
        raise RolloutCancelled("Rollout cancelled")
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise RolloutCancelled("Rollout cancelled")
