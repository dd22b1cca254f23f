"""In-memory LoWPAN interface.

Behaves like a co-processor that forms and joins networks instantly (after
``attach_delay``) and "hears" a configurable list of beacons when scanning.
Used by the test-suite and by ``--driver simulated`` for desk testing
without radio hardware.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from loguru import logger

from meshlink.errors import LowpanError
from meshlink.lowpan.driver import LowpanInterface
from meshlink.lowpan.models import (
    AttachmentState,
    Beacon,
    ProvisioningParams,
    Role,
)


class SimulatedInterface(LowpanInterface):
    """Stub interface.  Results of form/join arrive via callbacks, later.

    Parameters
    ----------
    name:
        Interface name reported to the manager (default ``"wpan0"``).
    beacons:
        Advertisements returned by every scan, in order.
    attach_delay:
        Seconds between a form/join request and its outcome.
    beacon_interval:
        Seconds between two beacons during a scan.
    """

    def __init__(
        self,
        name: str = "wpan0",
        *,
        beacons: list[Beacon] | None = None,
        attach_delay: float = 0.02,
        beacon_interval: float = 0.005,
    ) -> None:
        super().__init__(name)
        self.beacons: list[Beacon] = list(beacons or [])
        self.attach_delay = attach_delay
        self.beacon_interval = beacon_interval
        # Commands received, in order ("form", "join", "leave", "scan", ...)
        self.requests: list[str] = []
        # Detail of a provisioning error to report for the next form/join
        self.fail_next: str | None = None
        # Message of a LowpanError to raise synchronously on the next form/join
        self.reject_next: str | None = None
        self._state = AttachmentState.OFFLINE
        self._role = Role.DETACHED
        self._enabled = True
        self._params: ProvisioningParams | None = None
        self._pending: asyncio.TimerHandle | None = None

    # -- test helpers --------------------------------------------------------

    def add_beacon(self, beacon: Beacon) -> None:
        self.beacons.append(beacon)

    def clear_beacons(self) -> None:
        self.beacons.clear()

    def preset_provisioned(self, params: ProvisioningParams, role: Role = Role.LEADER) -> None:
        """Pretend the interface came up already attached to *params*."""
        self._params = params
        self._role = role
        self._state = AttachmentState.ATTACHED

    # -- queries -------------------------------------------------------------

    @property
    def state(self) -> AttachmentState:
        return self._state

    @property
    def role(self) -> Role:
        return self._role

    @property
    def enabled(self) -> bool:
        return self._enabled

    def provisioning_params(self) -> ProvisioningParams | None:
        return self._params

    # -- commands ------------------------------------------------------------

    async def set_enabled(self, enabled: bool) -> None:
        self.requests.append("enable" if enabled else "disable")
        if enabled == self._enabled:
            return
        self._enabled = enabled
        if not enabled:
            self._cancel_pending()
            self._emit_state(AttachmentState.OFFLINE)
        elif self._params is not None:
            self._emit_state(AttachmentState.ATTACHING)
            self._schedule(self._params, self._role, None)

    async def form(self, params: ProvisioningParams) -> None:
        self._begin("form", params, Role.LEADER)

    async def join(self, params: ProvisioningParams) -> None:
        self._begin("join", params, Role.END_DEVICE)

    async def leave(self) -> None:
        self.requests.append("leave")
        if self._params is None:
            raise LowpanError("not provisioned")
        self._cancel_pending()
        self._params = None
        self._role = Role.DETACHED
        self._emit_state(AttachmentState.OFFLINE)
        self._emit_identity(None)

    async def net_scan(self, duration: float) -> AsyncIterator[Beacon]:
        self.requests.append("scan")
        if not self._enabled:
            raise LowpanError("interface disabled")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        for beacon in list(self.beacons):
            await asyncio.sleep(self.beacon_interval)
            if loop.time() > deadline:
                break
            yield beacon

    # -- internals -----------------------------------------------------------

    def _begin(self, kind: str, params: ProvisioningParams, role: Role) -> None:
        self.requests.append(kind)
        if not self._enabled:
            raise LowpanError("interface disabled")
        if self.reject_next is not None:
            message, self.reject_next = self.reject_next, None
            raise LowpanError(message)
        failure, self.fail_next = self.fail_next, None
        self._cancel_pending()
        logger.debug("[LoWPAN/{}] simulated {} of {!r}", self.name, kind, params.identity.name)
        self._emit_state(AttachmentState.ATTACHING)
        self._schedule(params, role, failure)

    def _schedule(self, params: ProvisioningParams, role: Role, failure: str | None) -> None:
        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self.attach_delay, self._complete, params, role, failure)

    def _complete(self, params: ProvisioningParams, role: Role, failure: str | None) -> None:
        self._pending = None
        if failure is not None:
            self._state = AttachmentState.OFFLINE
            self._notify_provision_error(failure)
            return
        self._params = params
        self._role = role
        self._emit_state(AttachmentState.ATTACHED)
        self._emit_identity(params)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _emit_state(self, state: AttachmentState) -> None:
        self._state = state
        self._notify_state(state)

    def _emit_identity(self, params: ProvisioningParams | None) -> None:
        self._notify_identity(params.identity if params else None)
