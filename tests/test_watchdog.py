"""Tests for the feed/timeout/reset watchdog primitive."""
from __future__ import annotations

import asyncio

import pytest

from webpuppet.state import WatchdogFood
from webpuppet.watchdog import Watchdog, WatchdogReset

TIMEOUT = 0.1


def drain(channel: asyncio.Queue) -> list:
    items = []
    while not channel.empty():
        items.append(channel.get_nowait())
    return items


class TestWatchdogConstruction:
    """Construction-time validation."""

    def test_rejects_non_positive_timeout(self):
        """A zero window makes no sense."""
        with pytest.raises(ValueError):
            Watchdog(0, "dog", asyncio.Queue())

    def test_starts_disarmed_and_awake(self):
        """Nothing is armed before the first feed."""
        dog = Watchdog(TIMEOUT, "dog", asyncio.Queue())
        assert not dog.armed
        assert not dog.asleep
        assert dog.last_food is None
        assert dog.left() == 0.0


@pytest.mark.asyncio
class TestWatchdogFeed:
    """Feeding keeps the watchdog quiet; starving it fires exactly once."""

    async def test_feed_within_window_does_not_fire(self):
        """No reset while food keeps arriving inside the window."""
        channel: asyncio.Queue = asyncio.Queue()
        dog = Watchdog(TIMEOUT, "dog", channel)
        for i in range(4):
            dog.feed(WatchdogFood(type="ding", data=i))
            await asyncio.sleep(TIMEOUT * 0.5)
        assert channel.empty()
        assert dog.armed
        dog.sleep()

    async def test_starved_fires_exactly_one_reset_with_last_food(self):
        """The reset carries the last food and the watchdog does not re-arm."""
        channel: asyncio.Queue = asyncio.Queue()
        dog = Watchdog(TIMEOUT, "dog", channel)
        dog.feed(WatchdogFood(type="ding", data="first"))
        dog.feed(WatchdogFood(type="ding", data="last"))

        await asyncio.sleep(TIMEOUT * 4)

        resets = drain(channel)
        assert len(resets) == 1
        reset = resets[0]
        assert isinstance(reset, WatchdogReset)
        assert reset.name == "dog"
        assert reset.food.data == "last"
        assert reset.elapsed >= TIMEOUT
        assert not dog.armed

    async def test_food_timeout_overrides_default(self):
        """A longer per-food window postpones the reset."""
        channel: asyncio.Queue = asyncio.Queue()
        dog = Watchdog(TIMEOUT, "dog", channel)
        dog.feed(WatchdogFood(type="inited", timeout=TIMEOUT * 4))

        await asyncio.sleep(TIMEOUT * 2)
        assert channel.empty()

        await asyncio.sleep(TIMEOUT * 4)
        assert len(drain(channel)) == 1

    async def test_left_counts_down(self):
        """left() reports the remaining window."""
        dog = Watchdog(1.0, "dog", asyncio.Queue())
        dog.feed(WatchdogFood(type="ding"))
        await asyncio.sleep(0.05)
        assert 0.0 < dog.left() < 1.0
        dog.sleep()
        assert dog.left() == 0.0


@pytest.mark.asyncio
class TestWatchdogSleep:
    """A sleeping watchdog never fires; waking re-arms from zero."""

    async def test_sleep_suppresses_reset(self):
        """Elapsed time far beyond the window yields nothing while asleep."""
        channel: asyncio.Queue = asyncio.Queue()
        dog = Watchdog(TIMEOUT, "dog", channel)
        dog.feed(WatchdogFood(type="scan"))
        dog.sleep()

        await asyncio.sleep(TIMEOUT * 5)

        assert channel.empty()
        assert dog.asleep

    async def test_feed_while_asleep_records_without_arming(self):
        """Food is remembered but no timer starts."""
        channel: asyncio.Queue = asyncio.Queue()
        dog = Watchdog(TIMEOUT, "dog", channel)
        dog.sleep()
        dog.feed(WatchdogFood(type="login", data="me"))

        assert dog.last_food.data == "me"
        assert not dog.armed
        await asyncio.sleep(TIMEOUT * 3)
        assert channel.empty()

    async def test_wake_rearms_from_zero(self):
        """After wake() the full window applies again, not the time spent asleep."""
        channel: asyncio.Queue = asyncio.Queue()
        dog = Watchdog(TIMEOUT, "dog", channel)
        dog.feed(WatchdogFood(type="scan"))
        dog.sleep()
        await asyncio.sleep(TIMEOUT * 3)

        dog.wake()
        await asyncio.sleep(TIMEOUT * 0.5)
        assert channel.empty()

        await asyncio.sleep(TIMEOUT * 3)
        resets = drain(channel)
        assert len(resets) == 1
        assert resets[0].food.type == "scan"


@pytest.mark.asyncio
class TestHeartbeatCadence:
    """Regular feeds at half the window never fire; stopping fires once, on time."""

    async def test_half_window_feeds_then_stop(self):
        """Scaled down: feed every 0.1s against a 0.2s window, then go silent."""
        window = 0.2
        channel: asyncio.Queue = asyncio.Queue()
        dog = Watchdog(window, "PuppetWeb", channel)

        for i in range(8):
            dog.feed(WatchdogFood(type="ding", data=i))
            await asyncio.sleep(window / 2)
        assert channel.empty()

        loop = asyncio.get_running_loop()
        dog.feed(WatchdogFood(type="ding", data="last"))
        fed_at = loop.time()
        reset = await asyncio.wait_for(channel.get(), timeout=window * 3)
        fired_after = loop.time() - fed_at

        assert isinstance(reset, WatchdogReset)
        assert reset.food.data == "last"
        assert window * 0.9 <= fired_after <= window * 1.5
        assert reset.elapsed >= window
        await asyncio.sleep(window * 2)
        assert channel.empty()
