"""Clock synchronization between the client and the device.

Each probe asks the device for its current time and records three numbers:
when the request left, what the device echoed, and when the reply came back.
Assuming a symmetric path, the device clock read at the midpoint of the round
trip, so the offset is::

    offset = device_time - (send_time + receive_time) / 2

Network queuing only ever adds latency, so within a sliding window of recent
samples the one with the shortest round trip is the most trustworthy and is
the one used.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger("neurostream.timesync")


def local_time_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TimesyncSample:
    send_time: int
    receive_time: int
    device_time: int

    @property
    def round_trip(self) -> int:
        return self.receive_time - self.send_time

    @property
    def offset(self) -> int:
        return round(self.device_time - (self.send_time + self.receive_time) / 2)


@dataclass(frozen=True)
class ClockOffset:
    offset_millis: int = 0
    last_sample_time: int | None = None


class ClockSync:
    """Estimate and apply the device clock offset.

    Usage::

        clock = ClockSync(get_device_time=backend.get_timesync)
        clock.enable()
        marker_ts = clock.now()
        ...
        clock.disable()

    Args:
        get_device_time: Async callable returning the device time in ms.
        interval_s:      Seconds between probes while enabled.
        window:          Number of recent samples considered.
        probe_timeout_s: Per-probe timeout; a timed-out probe is skipped.
        clock:           Local time source in ms (injectable for tests).
    """

    def __init__(
        self,
        get_device_time: Callable[[], Awaitable[int]] | None = None,
        interval_s: float = 60.0,
        window: int = 10,
        probe_timeout_s: float = 5.0,
        clock: Callable[[], int] = local_time_ms,
    ) -> None:
        self._get_device_time = get_device_time
        self._interval_s = interval_s
        self._probe_timeout_s = probe_timeout_s
        self._clock = clock
        self._samples: deque[TimesyncSample] = deque(maxlen=max(1, window))
        self._current = ClockOffset()
        self._enabled = False
        self._ever_enabled = False
        self._task: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def current(self) -> ClockOffset:
        return self._current

    @property
    def offset(self) -> int:
        return self.get_offset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def enable(self) -> None:
        """Start periodic probing.  Safe to call twice."""
        self._enabled = True
        self._ever_enabled = True
        if self._get_device_time is None:
            logger.debug("Timesync enabled without a device time source; samples must be added manually")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info("Timesync enabled (interval=%.1fs)", self._interval_s)

    def disable(self) -> None:
        """Stop probing.  ``now()`` falls back to local time."""
        self._enabled = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._samples.clear()
        self._current = ClockOffset()

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def add_sample(self, send_time: int, receive_time: int, device_time: int) -> ClockOffset:
        """Record one round-trip sample and recompute the offset."""
        sample = TimesyncSample(send_time, receive_time, device_time)
        self._samples.append(sample)
        best = min(self._samples, key=lambda s: s.round_trip)
        self._current = ClockOffset(offset_millis=best.offset, last_sample_time=receive_time)
        return self._current

    async def probe(self) -> ClockOffset:
        """Take one sample.  Timeouts and transport errors keep the last offset."""
        if self._get_device_time is None:
            return self._current
        send_time = self._clock()
        try:
            device_time = await asyncio.wait_for(
                self._get_device_time(), timeout=self._probe_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timesync probe timed out after %.1fs; keeping offset %dms",
                self._probe_timeout_s,
                self._current.offset_millis,
            )
            return self._current
        except Exception as exc:
            logger.warning("Timesync probe failed: %s; keeping offset %dms", exc, self._current.offset_millis)
            return self._current
        receive_time = self._clock()
        offset = self.add_sample(send_time, receive_time, int(device_time))
        logger.debug(
            "Timesync sample rtt=%dms offset=%dms",
            receive_time - send_time,
            offset.offset_millis,
        )
        return offset

    async def _run(self) -> None:
        while self._enabled:
            await self.probe()
            await asyncio.sleep(self._interval_s)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def now(self) -> int:
        """Device-aligned timestamp in ms, or local time when disabled."""
        if not self._enabled:
            return self._clock()
        return self._clock() + self._current.offset_millis

    def get_offset(self) -> int:
        """Current offset in ms.  Warns when synchronization was never enabled."""
        if not self._ever_enabled:
            logger.warning("get_offset() requires timesync to be enabled; returning 0")
            return 0
        return self._current.offset_millis if self._enabled else 0
