from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from artscout.main.logging import get_logger

logger = get_logger(__name__)


class DispatchGate:
    """Spaces pipeline dispatches at least ``min_interval_seconds`` apart.

    Shared by every pipeline of one orchestrator since the downstream search
    provider is a single rate-limited resource. Callers queue on the lock, so
    dispatches are released one at a time in arrival order.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_dispatch: Optional[float] = None

    @property
    def last_dispatch(self) -> Optional[float]:
        return self._last_dispatch

    async def wait_turn(self) -> float:
        """Block until this caller may dispatch; returns the seconds waited."""
        async with self._lock:
            waited = 0.0
            if self._last_dispatch is not None:
                elapsed = self._clock() - self._last_dispatch
                if elapsed < self.min_interval_seconds:
                    waited = self.min_interval_seconds - elapsed
                    logger.info(
                        "Rate limiting search dispatch",
                        extra={"wait_seconds": round(waited, 3)},
                    )
                    await self._sleep(waited)
            self._last_dispatch = self._clock()
            return waited
