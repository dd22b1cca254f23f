"""Value types for LoWPAN networks, credentials and scan results.

Identities, credentials and beacons are immutable once constructed.  The
helpers at the bottom turn raw identifiers into display strings the way the
status and scan screens show them.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum


class AttachmentState(str, Enum):
    """Attachment state of the local node, owned by the controller."""

    OFFLINE = "offline"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    FAULT = "fault"


class Role(str, Enum):
    """Role of the node inside the mesh once attached."""

    DETACHED = "detached"
    END_DEVICE = "end-device"
    ROUTER = "router"
    LEADER = "leader"


class BeaconFlag(str, Enum):
    """Capability bits advertised in a beacon."""

    CAN_ASSIST = "can_assist"


@dataclass(frozen=True)
class NetworkIdentity:
    """Name and addressing parameters of one mesh network."""

    name: str
    xpanid: bytes = b""
    panid: int = 0
    channel: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.panid <= 0xFFFF:
            raise ValueError(f"panid out of range: {self.panid}")
        if not 0 <= self.channel <= 0xFF:
            raise ValueError(f"channel out of range: {self.channel}")
        if self.xpanid and len(self.xpanid) != 8:
            raise ValueError(f"xpanid must be 8 bytes, got {len(self.xpanid)}")


@dataclass(frozen=True)
class Credential:
    """Network master key.  The key material is never included in reprs."""

    key_material: bytes = field(repr=False)

    @classmethod
    def from_hex(cls, key_hex: str) -> "Credential":
        try:
            return cls(bytes.fromhex(key_hex))
        except ValueError as exc:
            raise ValueError("network key must be a hex string") from exc

    def __repr__(self) -> str:
        return f"Credential(<{len(self.key_material)} bytes>)"

    def to_hex(self) -> str:
        return self.key_material.hex()


@dataclass(frozen=True)
class ProvisioningParams:
    """What a form or join request carries to the interface."""

    identity: NetworkIdentity
    credential: Credential | None = None


@dataclass(frozen=True)
class Beacon:
    """One network advertisement observed during a scan."""

    identity: NetworkIdentity
    address: bytes = b""
    rssi: int = -100
    lqi: int = 0
    flags: frozenset[BeaconFlag] = frozenset()

    def __post_init__(self) -> None:
        if not 0 <= self.lqi <= 255:
            raise ValueError(f"lqi out of range: {self.lqi}")

    @property
    def can_assist(self) -> bool:
        return BeaconFlag.CAN_ASSIST in self.flags

    @property
    def signal_quality(self) -> int:
        """RSSI rescaled to the 1-255 range used for the signal bar."""
        return rssi_to_lqi(self.rssi)


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------

_HIGH_RSSI = -45
_LOW_RSSI = -90


def rssi_to_lqi(rssi: int) -> int:
    """Quick and dirty LQI from RSSI, clamped to 1-255."""
    lqi = (rssi - _LOW_RSSI) * 254 // (_HIGH_RSSI - _LOW_RSSI) + 1
    return max(1, min(255, lqi))


def bytes_to_hex(data: bytes) -> str:
    return data.hex()


def bytes_to_addr_hex(data: bytes) -> str:
    """Format a hardware address as colon separated hex octets."""
    return ":".join(f"{b:02x}" for b in data)


def state_to_string(state: AttachmentState | str) -> str:
    return state.value if isinstance(state, AttachmentState) else str(state)


def role_to_string(role: Role | str) -> str:
    return role.value if isinstance(role, Role) else str(role)


def random_network_name(rng: random.Random | None = None) -> str:
    """Generate an easily unique network name such as ``LoWPAN_142``."""
    return f"LoWPAN_{(rng or random).randrange(1000)}"
