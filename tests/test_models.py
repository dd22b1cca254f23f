"""Tests for LoWPAN value types, display helpers and the value codec."""

import random
from unittest.mock import AsyncMock

import pytest

from meshlink.link.protocol import DEFAULT_PORT, encode_value, read_value
from meshlink.lowpan.models import (
    AttachmentState,
    Beacon,
    BeaconFlag,
    Credential,
    NetworkIdentity,
    ProvisioningParams,
    Role,
    bytes_to_addr_hex,
    bytes_to_hex,
    random_network_name,
    role_to_string,
    rssi_to_lqi,
    state_to_string,
)

KEY_HEX = "00112233445566778899aabbccddeeff"

# ---------------------------------------------------------------------------
# Identity / credential
# ---------------------------------------------------------------------------


class TestNetworkIdentity:

    def test_defaults(self):
        ident = NetworkIdentity("lowpan_sample")
        assert ident.xpanid == b""
        assert ident.panid == 0
        assert ident.channel == 0

    def test_full_identity(self):
        ident = NetworkIdentity("net", xpanid=bytes(range(8)), panid=0xFACE, channel=26)
        assert ident.panid == 0xFACE
        assert len(ident.xpanid) == 8

    def test_panid_range(self):
        with pytest.raises(ValueError):
            NetworkIdentity("net", panid=0x10000)

    def test_channel_range(self):
        with pytest.raises(ValueError):
            NetworkIdentity("net", channel=256)

    def test_xpanid_length(self):
        with pytest.raises(ValueError):
            NetworkIdentity("net", xpanid=b"\x01\x02")

    def test_immutable(self):
        ident = NetworkIdentity("net")
        with pytest.raises(AttributeError):
            ident.name = "other"

    def test_equality(self):
        assert NetworkIdentity("a", channel=11) == NetworkIdentity("a", channel=11)
        assert NetworkIdentity("a") != NetworkIdentity("b")


class TestCredential:

    def test_from_hex(self):
        cred = Credential.from_hex(KEY_HEX)
        assert len(cred.key_material) == 16
        assert cred.to_hex() == KEY_HEX

    def test_bad_hex(self):
        with pytest.raises(ValueError):
            Credential.from_hex("not-hex")

    def test_repr_hides_key(self):
        cred = Credential.from_hex(KEY_HEX)
        text = repr(cred)
        assert KEY_HEX not in text
        assert "16 bytes" in text

    def test_params_repr_hides_key(self):
        params = ProvisioningParams(NetworkIdentity("net"), Credential.from_hex(KEY_HEX))
        assert KEY_HEX not in repr(params)


# ---------------------------------------------------------------------------
# Beacon
# ---------------------------------------------------------------------------


class TestBeacon:

    def test_can_assist(self):
        b = Beacon(NetworkIdentity("n"), flags=frozenset({BeaconFlag.CAN_ASSIST}))
        assert b.can_assist is True
        assert Beacon(NetworkIdentity("n")).can_assist is False

    def test_lqi_range(self):
        with pytest.raises(ValueError):
            Beacon(NetworkIdentity("n"), lqi=300)

    def test_signal_quality(self):
        assert Beacon(NetworkIdentity("n"), rssi=-45).signal_quality == 255
        assert Beacon(NetworkIdentity("n"), rssi=-120).signal_quality == 1


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


class TestDisplayHelpers:

    def test_rssi_to_lqi_bounds(self):
        assert rssi_to_lqi(-90) == 1
        assert rssi_to_lqi(-45) == 255
        assert rssi_to_lqi(-200) == 1
        assert rssi_to_lqi(0) == 255

    def test_rssi_to_lqi_monotonic(self):
        values = [rssi_to_lqi(r) for r in range(-90, -44)]
        assert values == sorted(values)

    def test_bytes_to_hex(self):
        assert bytes_to_hex(b"\xde\xad\xbe\xef") == "deadbeef"

    def test_bytes_to_addr_hex(self):
        assert bytes_to_addr_hex(b"\x01\xab\xff") == "01:ab:ff"
        assert bytes_to_addr_hex(b"") == ""

    def test_state_and_role_strings(self):
        assert state_to_string(AttachmentState.ATTACHED) == "attached"
        assert state_to_string("weird") == "weird"
        assert role_to_string(Role.END_DEVICE) == "end-device"

    def test_random_network_name(self):
        name = random_network_name(random.Random(7))
        assert name.startswith("LoWPAN_")
        assert 0 <= int(name.split("_")[1]) < 1000


# ---------------------------------------------------------------------------
# Value codec
# ---------------------------------------------------------------------------


class TestValueCodec:

    def test_default_port(self):
        assert DEFAULT_PORT == 23456

    @pytest.mark.parametrize("value", [0, 1, 128, 255])
    def test_encode_single_octet(self, value):
        assert encode_value(value) == bytes([value])

    @pytest.mark.parametrize("value", [-1, 256, 1000])
    def test_encode_out_of_range(self, value):
        with pytest.raises(ValueError):
            encode_value(value)

    @pytest.mark.parametrize("value", [1.5, "7", True, None])
    def test_encode_rejects_non_int(self, value):
        with pytest.raises(TypeError):
            encode_value(value)

    @pytest.mark.asyncio
    async def test_read_value(self):
        reader = AsyncMock()
        reader.read = AsyncMock(return_value=b"\xff")
        assert await read_value(reader) == 255
        reader.read.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_read_value_eof(self):
        reader = AsyncMock()
        reader.read = AsyncMock(return_value=b"")
        assert await read_value(reader) is None
