# keydeal_selector/throttle.py
from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, List

from .logger import log

SleepFn = Callable[[float], Awaitable[None]]
RandFn = Callable[[float, float], float]


class RequestPacer:
    """
    Single place that decides how long to wait between outbound requests.

      - pause()          between successive products in a comparison run
      - attempt_pause()  between unsuccessful search variants for one product
      - backoff(n)       before retry n of a transient HTTP failure

    Sleep and jitter are injected so tests can record waits instead of
    actually sleeping.
    """

    def __init__(
        self,
        item_delay: float = 1.0,
        attempt_delay: float = 0.5,
        jitter: float = 0.0,
        base_backoff: float = 1.5,
        sleep: SleepFn = asyncio.sleep,
        rand: RandFn = random.uniform,
    ) -> None:
        self.item_delay = max(0.0, float(item_delay))
        self.attempt_delay = max(0.0, float(attempt_delay))
        self.jitter = max(0.0, float(jitter))
        self.base_backoff = max(0.0, float(base_backoff))
        self._sleep = sleep
        self._rand = rand
        self.history: List[float] = []

    def _with_jitter(self, seconds: float) -> float:
        if self.jitter <= 0:
            return seconds
        return seconds + self._rand(0.0, self.jitter)

    async def _wait(self, seconds: float) -> None:
        if seconds <= 0:
            return
        self.history.append(seconds)
        await self._sleep(seconds)

    async def pause(self) -> None:
        await self._wait(self._with_jitter(self.item_delay))

    async def attempt_pause(self) -> None:
        await self._wait(self.attempt_delay)

    async def backoff(self, attempt: int) -> None:
        seconds = self._with_jitter(self.base_backoff * max(1, attempt))
        log(f"backing off {seconds:.1f}s before retry {attempt + 1}", context="throttle")
        await self._wait(seconds)
