"""Feed/timeout/reset primitive used for independent liveness signals."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from .state import WatchdogFood

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchdogReset:
    """Pushed onto the owner's channel when a watchdog starves."""

    name: str
    food: Optional[WatchdogFood]
    elapsed: float


class Watchdog:
    """
    One timer, one asleep flag, one last-fed food.

    The watchdog knows nothing about what its food means. On expiry it pushes
    a single `WatchdogReset` onto `channel` and stays disarmed until it is fed
    again (or woken).
    """

    def __init__(self, timeout: float, name: str, channel: "asyncio.Queue[Any]") -> None:
        if timeout <= 0:
            raise ValueError("watchdog timeout must be positive")
        self.timeout = timeout
        self.name = name
        self._channel = channel

        self._timer: Optional[asyncio.TimerHandle] = None
        self._asleep = False
        self._last_food: Optional[WatchdogFood] = None
        self._last_fed_at: Optional[float] = None
        self._armed_at: Optional[float] = None
        self._armed_for: float = 0.0

    def __repr__(self) -> str:
        return f"Watchdog({self.name!r}, timeout={self.timeout}, asleep={self._asleep})"

    @property
    def asleep(self) -> bool:
        return self._asleep

    @property
    def armed(self) -> bool:
        return self._timer is not None

    @property
    def last_food(self) -> Optional[WatchdogFood]:
        return self._last_food

    @property
    def last_fed_at(self) -> Optional[float]:
        return self._last_fed_at

    def feed(self, food: WatchdogFood) -> None:
        """Record `food` and restart the window; a sleeping watchdog only records."""
        self._last_food = food
        self._last_fed_at = time.monotonic()
        if self._asleep:
            logger.debug("%s: fed while asleep (%s)", self.name, food.type)
            return
        self._arm(food.timeout or self.timeout)

    def sleep(self) -> None:
        logger.debug("%s: sleep()", self.name)
        self._asleep = True
        self._disarm()

    def wake(self) -> None:
        """Leave sleep and re-arm from zero."""
        logger.debug("%s: wake()", self.name)
        self._asleep = False
        timeout = self._last_food.timeout if self._last_food and self._last_food.timeout else self.timeout
        self._arm(timeout)

    def left(self) -> float:
        """Seconds until the watchdog fires; zero when disarmed."""
        if self._timer is None or self._armed_at is None:
            return 0.0
        return max(0.0, self._armed_for - (time.monotonic() - self._armed_at))

    def _arm(self, timeout: float) -> None:
        self._disarm()
        loop = asyncio.get_running_loop()
        self._armed_at = time.monotonic()
        self._armed_for = timeout
        self._timer = loop.call_later(timeout, self._on_timeout)

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        if self._asleep:
            return
        since = self._last_fed_at if self._last_fed_at is not None else self._armed_at
        elapsed = time.monotonic() - since if since is not None else 0.0
        logger.warning(
            "%s: reset after %.1fs without food (last food: %s)",
            self.name,
            elapsed,
            self._last_food.type if self._last_food else None,
        )
        try:
            self._channel.put_nowait(WatchdogReset(name=self.name, food=self._last_food, elapsed=elapsed))
        except asyncio.QueueFull:
            logger.error("%s: owner channel full, reset dropped", self.name)


__all__ = ["Watchdog", "WatchdogReset"]
