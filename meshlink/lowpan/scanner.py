"""Time-bounded network scan producing beacons.

A ``ScanSession`` drives one interface's scan primitive in a background task.
Beacons are delivered through the optional ``on_beacon`` callback *and* the
lazy ``beacons()`` async iterator; ``on_finished`` fires exactly once per
``start()``, whether the scan ran out, failed, or was stopped.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from loguru import logger

from meshlink.errors import BusyError, LowpanError, NoInterfaceError
from meshlink.lowpan.driver import LowpanInterface
from meshlink.lowpan.models import Beacon
from meshlink.tasks import cancel_and_wait, supervised_task

_DONE = object()


class ScanSession:
    """One restartable scan over a LoWPAN interface.

    Parameters
    ----------
    interface:
        The interface to scan with; ``None`` makes ``start()`` fail.
    duration:
        Seconds the scan may run before it completes on its own.
    on_beacon:
        Called with every beacon, in arrival order.
    on_finished:
        Called once when the scan completes.
    """

    def __init__(
        self,
        interface: LowpanInterface | None,
        duration: float = 10.0,
        on_beacon: Callable[[Beacon], None] | None = None,
        on_finished: Callable[[], None] | None = None,
    ) -> None:
        self.interface = interface
        self.duration = duration
        self.on_beacon = on_beacon
        self.on_finished = on_finished
        self._task: asyncio.Task | None = None
        self._queue: asyncio.Queue | None = None
        self._active = False
        self._finished = True
        self.beacon_count = 0

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> None:
        """Begin scanning.  Raises ``BusyError`` or ``NoInterfaceError``."""
        if self._active:
            raise BusyError("already scanning")
        if self.interface is None:
            raise NoInterfaceError()
        self._active = True
        self._finished = False
        self.beacon_count = 0
        self._queue = asyncio.Queue()
        self._task = supervised_task(self._run(self.interface), name="lowpan-scan")
        logger.debug("[LoWPAN/Scan] scanning on {} for {:.1f}s", self.interface.name, self.duration)

    async def stop(self) -> None:
        """Abort an in-progress scan.  Safe to call when not scanning."""
        await cancel_and_wait(self._task)
        self._task = None
        # A task cancelled before its first step never reaches its finally.
        if self._active:
            self._finish()

    async def beacons(self) -> AsyncIterator[Beacon]:
        """Yield this session's beacons until the scan finishes."""
        queue = self._queue
        if queue is None:
            return
        while True:
            item = await queue.get()
            if item is _DONE:
                return
            yield item

    async def wait(self) -> None:
        """Block until the current scan has finished."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _run(self, interface: LowpanInterface) -> None:
        try:
            async for beacon in interface.net_scan(self.duration):
                self._deliver(beacon)
        except LowpanError as exc:
            logger.warning("[LoWPAN/Scan] scan failed: {}", exc)
        finally:
            self._finish()

    def _deliver(self, beacon: Beacon) -> None:
        self.beacon_count += 1
        logger.debug(
            "[LoWPAN/Scan] beacon {!r} ch={} panid={:04X} rssi={}",
            beacon.identity.name, beacon.identity.channel, beacon.identity.panid, beacon.rssi,
        )
        if self._queue is not None:
            self._queue.put_nowait(beacon)
        if self.on_beacon:
            try:
                self.on_beacon(beacon)
            except Exception as exc:
                logger.error("[LoWPAN/Scan] beacon callback error: {}", exc)

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._active = False
        if self._queue is not None:
            self._queue.put_nowait(_DONE)
        logger.debug("[LoWPAN/Scan] scan finished ({} beacons)", self.beacon_count)
        if self.on_finished:
            try:
                self.on_finished()
            except Exception as exc:
                logger.error("[LoWPAN/Scan] finished callback error: {}", exc)
