"""End-to-end tests for MeshNode on the simulated interface."""

import asyncio

import pytest

from meshlink.__main__ import format_beacon, format_event
from meshlink.bus.events import CoreEvent, EventKind
from meshlink.config import Config
from meshlink.errors import ConfigurationError
from meshlink.link.relay import LinkState
from meshlink.lowpan.models import (
    AttachmentState,
    Beacon,
    BeaconFlag,
    Credential,
    NetworkIdentity,
    ProvisioningParams,
)
from meshlink.lowpan.simulated import SimulatedInterface
from meshlink.node import MeshNode

KEY_HEX = "FC4262D8F8F79502ABCD326356C610A5"


def _config(role="receiver", port=0, **link):
    return Config(
        lowpan={"driver": "simulated", "network_key": KEY_HEX},
        link={"role": role, "listen_host": "127.0.0.1", "port": port, **link},
    )


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------


class TestStartup:

    @pytest.mark.asyncio
    async def test_missing_key_is_fatal(self):
        config = Config(lowpan={"driver": "simulated"})
        node = MeshNode(config)
        with pytest.raises(ConfigurationError):
            await node.start()
        assert not node.running
        assert node.bus.subscriber_count == 0
        assert node.manager.get_interface() is None

    @pytest.mark.asyncio
    async def test_placeholder_server_is_fatal(self):
        node = MeshNode(_config("transmitter", server_address="<DEVICE_SERVER_ADDRESS>"))
        with pytest.raises(ConfigurationError):
            await node.start()


# ---------------------------------------------------------------------------
# Receiver
# ---------------------------------------------------------------------------


class TestReceiver:

    @pytest.mark.asyncio
    async def test_forms_then_listens(self):
        node = MeshNode(_config())
        sub = node.bus.subscribe(EventKind.VALUE_RECEIVED)
        await node.start()
        await _wait_for(lambda: node.relay.listening)
        assert node.controller.state is AttachmentState.ATTACHED
        assert node.relay.state is LinkState.IDLE
        iface = node.manager.get_interface()
        assert iface.provisioning_params().credential == Credential.from_hex(KEY_HEX)

        _, writer = await asyncio.open_connection("127.0.0.1", node.relay.bound_port)
        writer.write(b"\x2a")
        await writer.drain()
        event = await asyncio.wait_for(sub.get(), timeout=2.0)
        assert event.value == 42
        writer.close()
        await node.stop()
        assert not node.relay.listening

    @pytest.mark.asyncio
    async def test_already_provisioned_is_not_reformed(self):
        iface = SimulatedInterface()
        iface.preset_provisioned(ProvisioningParams(
            NetworkIdentity("lowpan_sample"), Credential.from_hex(KEY_HEX),
        ))
        node = MeshNode(_config(), interface=iface)
        await node.start()
        await _wait_for(lambda: node.relay.listening)
        assert iface.requests == []
        await node.stop()

    @pytest.mark.asyncio
    async def test_interface_loss_drops_transport(self):
        iface = SimulatedInterface()
        node = MeshNode(_config(), interface=iface)
        await node.start()
        await _wait_for(lambda: node.relay.listening)
        node.manager.remove_interface(iface)
        await _wait_for(lambda: node.relay.state is LinkState.NO_TRANSPORT)
        assert not node.relay.listening
        assert node.controller.state is AttachmentState.OFFLINE
        await node.stop()

    @pytest.mark.asyncio
    async def test_provision_failure_keeps_link_down(self):
        iface = SimulatedInterface()
        iface.fail_next = "form failed"
        node = MeshNode(_config(), interface=iface)
        await node.start()
        await _wait_for(lambda: node.controller.state is AttachmentState.FAULT)
        await asyncio.sleep(0.05)
        assert node.relay.state is LinkState.NO_TRANSPORT
        assert not node.relay.listening
        await node.stop()


# ---------------------------------------------------------------------------
# Receiver + transmitter
# ---------------------------------------------------------------------------


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_transmitter_to_receiver(self):
        receiver = MeshNode(_config())
        values = receiver.bus.subscribe(EventKind.VALUE_RECEIVED)
        await receiver.start()
        await _wait_for(lambda: receiver.relay.listening)

        transmitter = MeshNode(_config(
            "transmitter", port=receiver.relay.bound_port, server_address="127.0.0.1",
        ))
        await transmitter.start()
        await _wait_for(lambda: transmitter.relay.connected)
        await _wait_for(lambda: receiver.relay.connected)

        for v in (0, 100, 255):
            assert await transmitter.send(v) is True
        got = [(await asyncio.wait_for(values.get(), timeout=2.0)).value for _ in range(3)]
        assert got == [0, 100, 255]

        await transmitter.stop()
        await _wait_for(lambda: receiver.relay.state is LinkState.LOST)
        await receiver.stop()

    @pytest.mark.asyncio
    async def test_transmitter_without_auto_connect(self):
        node = MeshNode(_config("transmitter", server_address="127.0.0.1", auto_connect=False))
        await node.start()
        await _wait_for(lambda: node.relay.state is LinkState.IDLE)
        assert await node.send(1) is False
        await node.stop()


# ---------------------------------------------------------------------------
# Console presenter
# ---------------------------------------------------------------------------


class TestPresenter:

    def test_value_line(self):
        line = format_event(CoreEvent(kind=EventKind.VALUE_RECEIVED, source="link", value=7))
        assert line.split() == ["value", "7"]

    def test_lost_shows_placeholder(self):
        line = format_event(CoreEvent(kind=EventKind.LINK_STATE, source="link", state="lost", detail="peer closed"))
        assert "XXXX" in line
        assert "peer closed" in line

    def test_error_line(self):
        line = format_event(CoreEvent(kind=EventKind.ERROR, source="attachment", detail="boom"))
        assert "attachment" in line and "boom" in line

    def test_beacon_line(self):
        beacon = Beacon(
            NetworkIdentity("lab", xpanid=bytes(8), panid=0x1234, channel=11),
            address=b"\x01\x02", rssi=-60, lqi=80, flags=frozenset({BeaconFlag.CAN_ASSIST}),
        )
        line = format_beacon(beacon)
        assert "lab" in line
        assert "panid=0x1234" in line
        assert "01:02" in line
        assert "can-assist" in line
