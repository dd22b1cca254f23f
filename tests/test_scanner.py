"""Tests for ScanSession."""

import asyncio

import pytest

from meshlink.errors import BusyError, LowpanError, NoInterfaceError
from meshlink.lowpan.models import Beacon, NetworkIdentity
from meshlink.lowpan.scanner import ScanSession
from meshlink.lowpan.simulated import SimulatedInterface


def _beacons(*names):
    return [Beacon(NetworkIdentity(n, channel=11), rssi=-60, lqi=100) for n in names]


class TestScanSession:

    @pytest.mark.asyncio
    async def test_delivers_beacons_in_order_then_finishes(self):
        iface = SimulatedInterface(beacons=_beacons("a", "b", "c"))
        seen, finished = [], []
        session = ScanSession(
            iface, duration=1.0,
            on_beacon=lambda b: seen.append(b.identity.name),
            on_finished=lambda: finished.append(True),
        )
        await session.start()
        assert session.active
        await asyncio.wait_for(session.wait(), timeout=2.0)
        assert seen == ["a", "b", "c"]
        assert finished == [True]
        assert not session.active
        assert session.beacon_count == 3

    @pytest.mark.asyncio
    async def test_beacons_iterator(self):
        iface = SimulatedInterface(beacons=_beacons("x", "y"))
        session = ScanSession(iface, duration=1.0)
        await session.start()
        names = [b.identity.name async for b in session.beacons()]
        assert names == ["x", "y"]

    @pytest.mark.asyncio
    async def test_empty_scan_finishes(self):
        finished = []
        session = ScanSession(SimulatedInterface(), duration=0.05, on_finished=lambda: finished.append(1))
        await session.start()
        await asyncio.wait_for(session.wait(), timeout=1.0)
        assert finished == [1]

    @pytest.mark.asyncio
    async def test_start_while_active_is_busy(self):
        iface = SimulatedInterface(beacons=_beacons("a"), beacon_interval=0.5)
        session = ScanSession(iface, duration=5.0)
        await session.start()
        with pytest.raises(BusyError, match="already scanning"):
            await session.start()
        await session.stop()

    @pytest.mark.asyncio
    async def test_no_interface(self):
        session = ScanSession(None)
        with pytest.raises(NoInterfaceError):
            await session.start()
        assert not session.active

    @pytest.mark.asyncio
    async def test_stop_finishes_exactly_once(self):
        iface = SimulatedInterface(beacons=_beacons("a", "b"), beacon_interval=0.5)
        finished = []
        session = ScanSession(iface, duration=5.0, on_finished=lambda: finished.append(1))
        await session.start()
        await asyncio.sleep(0)
        await session.stop()
        await session.stop()
        assert finished == [1]
        assert not session.active

    @pytest.mark.asyncio
    async def test_stop_before_first_step(self):
        finished = []
        session = ScanSession(SimulatedInterface(), duration=5.0, on_finished=lambda: finished.append(1))
        await session.start()
        await session.stop()
        assert finished == [1]

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self):
        finished = []
        session = ScanSession(SimulatedInterface(), on_finished=lambda: finished.append(1))
        await session.stop()
        assert finished == []

    @pytest.mark.asyncio
    async def test_restart_after_finish(self):
        iface = SimulatedInterface(beacons=_beacons("a"))
        finished = []
        session = ScanSession(iface, duration=1.0, on_finished=lambda: finished.append(1))
        await session.start()
        await session.wait()
        await session.start()
        await session.wait()
        assert finished == [1, 1]
        assert iface.requests.count("scan") == 2

    @pytest.mark.asyncio
    async def test_driver_failure_still_finishes(self):
        iface = SimulatedInterface(beacons=_beacons("a"))
        await iface.set_enabled(False)
        finished = []
        session = ScanSession(iface, duration=1.0, on_finished=lambda: finished.append(1))
        await session.start()
        await asyncio.wait_for(session.wait(), timeout=1.0)
        assert finished == [1]
        assert session.beacon_count == 0

    @pytest.mark.asyncio
    async def test_callback_error_does_not_abort_scan(self):
        iface = SimulatedInterface(beacons=_beacons("a", "b"))

        def bad(_beacon):
            raise RuntimeError("presenter crashed")

        session = ScanSession(iface, duration=1.0, on_beacon=bad)
        await session.start()
        await session.wait()
        assert session.beacon_count == 2

    @pytest.mark.asyncio
    async def test_duration_bounds_scan(self):
        iface = SimulatedInterface(beacons=_beacons("a", "b", "c", "d"), beacon_interval=0.05)
        session = ScanSession(iface, duration=0.08)
        await session.start()
        await asyncio.wait_for(session.wait(), timeout=1.0)
        assert session.beacon_count < 4


class TestSimulatedScanErrors:

    @pytest.mark.asyncio
    async def test_disabled_interface_raises(self):
        iface = SimulatedInterface()
        await iface.set_enabled(False)
        with pytest.raises(LowpanError):
            async for _ in iface.net_scan(0.1):
                pass
