"""Throttling between remote mutation calls."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable

DEFAULT_DELAY_MS = 120


def delay_from_env() -> float:
    return int(os.environ.get("UPDATE_THROTTLE_MS", DEFAULT_DELAY_MS)) / 1000


class Throttle:
    """Fixed pause after every attempted mutation, successful or not.

    Keeps a sequential bulk run under Shopify's REST call limit.
    """

    def __init__(
        self,
        *,
        delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if delay is None:
            delay = delay_from_env()
        if delay < 0:
            raise ValueError("Throttle delay must be >= 0")
        self.delay = delay
        self._sleep = sleep
        self.pauses = 0

    async def wait(self) -> None:
        self.pauses += 1
        if self.delay:
            await self._sleep(self.delay)
