"""Network attachment state machine.

The controller owns the node's ``AttachmentState`` and is the only writer.
Transitions are driven by two event sources:

- interface presence (``LowpanManager``: interface added / removed), and
- the interface's own callbacks (state changed, identity changed,
  provisioning error).

::

    Offline  --form/join/ensure-->  Attaching  --attached-->  Attached
                                    Attaching  --error----->  Fault
    Attached --leave------------->  Offline
    any      --interface removed->  Offline

Every transition is published on the bus as an ``ATTACHMENT_STATE`` event.
Provisioning failures are terminal for the attempt: nothing is retried and
the caller has to issue a fresh ``form``/``join``.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import Any, Callable

from loguru import logger

from meshlink.bus.events import CoreEvent, EventKind
from meshlink.bus.queue import MessageBus
from meshlink.errors import BusyError, LowpanError, NoInterfaceError
from meshlink.lowpan.driver import (
    InterfaceCallback,
    LowpanInterface,
    LowpanManager,
    ManagerCallback,
)
from meshlink.lowpan.models import (
    AttachmentState,
    Beacon,
    Credential,
    NetworkIdentity,
    ProvisioningParams,
    role_to_string,
    state_to_string,
)
from meshlink.lowpan.scanner import ScanSession
from meshlink.tasks import cancel_and_wait, supervised_task

PROVISION_MODES = ("form", "join", "none")


class _InterfaceListener(InterfaceCallback):
    """Forwards one interface's notifications, tagged with that interface."""

    def __init__(self, controller: AttachmentController, interface: LowpanInterface) -> None:
        self.controller = controller
        self.interface = interface

    def on_state_changed(self, state: AttachmentState) -> None:
        ctrl = self.controller
        ctrl._dispatch(ctrl._interface_state, self.interface, state)

    def on_identity_changed(self, identity: NetworkIdentity | None) -> None:
        ctrl = self.controller
        ctrl._dispatch(ctrl._interface_identity, self.interface, identity)

    def on_provision_error(self, detail: str) -> None:
        ctrl = self.controller
        ctrl._dispatch(ctrl._interface_error, self.interface, detail)


class AttachmentController(ManagerCallback):
    """Scan for, form or join a mesh network and track attachment.

    Parameters
    ----------
    manager:
        Interface registry to subscribe to.
    bus:
        Where state transitions are published.
    network_name:
        Name of the network ``ensure_attached`` provisions.
    credential:
        Default credential for form/join requests.
    channel:
        Channel used when forming (``None`` lets the stack choose).
    scan_duration:
        Seconds a join-by-scan waits for a matching beacon.
    provision_mode:
        What ``ensure_attached`` does when not yet provisioned:
        ``"form"``, ``"join"`` (scan then join) or ``"none"``.
    auto_provision:
        Run ``ensure_attached`` as soon as an interface appears.
    """

    source = "attachment"

    def __init__(
        self,
        manager: LowpanManager,
        bus: MessageBus,
        *,
        network_name: str = "lowpan_sample",
        credential: Credential | None = None,
        channel: int | None = None,
        scan_duration: float = 10.0,
        provision_mode: str = "form",
        auto_provision: bool = False,
    ) -> None:
        if provision_mode not in PROVISION_MODES:
            raise ValueError(f"unknown provision mode: {provision_mode!r}")
        self.manager = manager
        self.bus = bus
        self.network_name = network_name
        self.credential = credential
        self.channel = channel
        self.scan_duration = scan_duration
        self.provision_mode = provision_mode
        self.auto_provision = auto_provision

        self._state = AttachmentState.OFFLINE
        self._state_lock = threading.Lock()
        self._interface: LowpanInterface | None = None
        self._listener: _InterfaceListener | None = None
        self._identity: NetworkIdentity | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._scan: ScanSession | None = None
        self._join_task: asyncio.Task | None = None
        self._ensure_task: asyncio.Task | None = None
        self._started = False

    # -- queries -------------------------------------------------------------

    @property
    def state(self) -> AttachmentState:
        with self._state_lock:
            return self._state

    @property
    def interface(self) -> LowpanInterface | None:
        return self._interface

    @property
    def identity(self) -> NetworkIdentity | None:
        return self._identity

    @property
    def scanning(self) -> bool:
        return self._scan is not None and self._scan.active

    @property
    def busy(self) -> bool:
        """A scan or provisioning attempt is in flight."""
        return self.state is AttachmentState.ATTACHING or self.scanning

    def status(self) -> dict[str, Any]:
        """Snapshot for a status screen."""
        iface = self._interface
        if iface is None:
            return {"interface": None, "state": state_to_string(self.state)}
        params = iface.provisioning_params()
        return {
            "interface": iface.name,
            "state": state_to_string(self.state),
            "role": role_to_string(iface.role),
            "enabled": iface.enabled,
            "network": params.identity.name if params else "",
        }

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Subscribe to interface presence and adopt an existing interface."""
        if self._started:
            return
        self._started = True
        self._loop = asyncio.get_running_loop()
        self.manager.register_callback(self)
        iface = self.manager.get_interface()
        if iface is not None:
            self._interface_added(iface)
        else:
            logger.warning("[LoWPAN/Attach] no LoWPAN interface found yet")

    async def stop(self) -> None:
        """Abort scans, drop callbacks.  Does not leave the network."""
        await self.stop_scan()
        await cancel_and_wait(self._join_task)
        await cancel_and_wait(self._ensure_task)
        self.manager.unregister_callback(self)
        self._release_interface()
        # Re-derived from the manager's interface on the next start().
        with self._state_lock:
            self._state = AttachmentState.OFFLINE
        self._started = False
        logger.info("[LoWPAN/Attach] stopped")

    async def stop_scan(self) -> None:
        if self._scan is not None:
            await self._scan.stop()

    # -- provisioning --------------------------------------------------------

    async def ensure_attached(self, mode: str | None = None) -> bool:
        """Make sure the interface is on ``network_name``.

        No-op when already provisioned on that network or while an attempt
        is in flight.  Returns ``True`` if a scan or form request was issued.
        """
        iface = self._require_interface()
        mode = mode or self.provision_mode
        params = iface.provisioning_params()
        if params is not None and params.identity.name == self.network_name:
            logger.debug("[LoWPAN/Attach] already provisioned on {!r}", self.network_name)
            return False
        if self.busy or (self._join_task is not None and not self._join_task.done()):
            logger.debug("[LoWPAN/Attach] attempt already in progress")
            return False
        if mode == "none":
            return False
        if mode == "form":
            identity = NetworkIdentity(name=self.network_name, channel=self.channel or 0)
            await self.form(identity)
            return True
        await self._start_scan_and_join()
        return True

    async def form(self, identity: NetworkIdentity, credential: Credential | None = None) -> None:
        """Request creation of *identity*.  Raises ``BusyError``/``NoInterfaceError``."""
        await self._provision("form", identity, credential)

    async def join(self, identity: NetworkIdentity, credential: Credential | None = None) -> None:
        """Request attachment to *identity*.  Raises ``BusyError``/``NoInterfaceError``."""
        await self._provision("join", identity, credential)

    async def leave(self) -> bool:
        """Detach from the current network.  Failures are logged, not raised."""
        iface = self._interface
        if iface is None or not iface.is_provisioned:
            logger.warning("[LoWPAN/Attach] leave ignored: not provisioned")
            return False
        try:
            await iface.leave()
        except LowpanError as exc:
            logger.error("[LoWPAN/Attach] leaving network failed: {}", exc)
            return False
        logger.info("[LoWPAN/Attach] left network")
        self._transition(AttachmentState.OFFLINE)
        return True

    async def set_enabled(self, enabled: bool) -> bool:
        iface = self._require_interface()
        if iface.enabled == enabled:
            return True
        try:
            await iface.set_enabled(enabled)
        except LowpanError as exc:
            logger.error("[LoWPAN/Attach] enable={} failed: {}", enabled, exc)
            return False
        return True

    async def start_scan(
        self,
        on_beacon: Callable[[Beacon], None] | None = None,
        on_finished: Callable[[], None] | None = None,
        duration: float | None = None,
    ) -> ScanSession:
        """Start a user-driven scan; results go to the given callbacks."""
        iface = self._require_interface()
        if self.busy:
            raise BusyError("already scanning" if self.scanning else "provisioning in progress")
        self._scan = ScanSession(
            iface,
            duration=duration if duration is not None else self.scan_duration,
            on_beacon=on_beacon,
            on_finished=on_finished,
        )
        await self._scan.start()
        return self._scan

    async def _provision(
        self,
        kind: str,
        identity: NetworkIdentity,
        credential: Credential | None,
    ) -> None:
        iface = self._require_interface()
        if self.busy:
            raise BusyError("already scanning" if self.scanning else "provisioning in progress")
        params = ProvisioningParams(identity=identity, credential=credential or self.credential)
        logger.info("[LoWPAN/Attach] {} network {!r} on {}", kind, identity.name, iface.name)
        self._transition(AttachmentState.ATTACHING)
        try:
            await (iface.form(params) if kind == "form" else iface.join(params))
        except LowpanError as exc:
            logger.error("[LoWPAN/Attach] {} request rejected: {}", kind, exc)
            self._transition(AttachmentState.FAULT, str(exc))

    async def _start_scan_and_join(self) -> None:
        session = await self.start_scan()
        self._join_task = supervised_task(self._join_first_match(session), name="lowpan-scan-join")

    async def _join_first_match(self, session: ScanSession) -> None:
        """Join the first beacon whose name matches; otherwise stay offline."""
        match: Beacon | None = None
        async with contextlib.aclosing(session.beacons()) as beacons:
            async for beacon in beacons:
                if beacon.identity.name == self.network_name:
                    match = beacon
                    break
                logger.debug("[LoWPAN/Attach] discarding beacon {!r}", beacon.identity.name)
        await session.stop()
        if match is None:
            logger.info("[LoWPAN/Attach] no beacon for {!r}, staying offline", self.network_name)
            return
        try:
            await self.join(match.identity)
        except (BusyError, NoInterfaceError) as exc:
            logger.warning("[LoWPAN/Attach] join after scan skipped: {}", exc)

    def _require_interface(self) -> LowpanInterface:
        iface = self._interface
        if iface is None:
            raise NoInterfaceError()
        return iface

    # -- state ---------------------------------------------------------------

    def _transition(self, state: AttachmentState, detail: str = "") -> None:
        with self._state_lock:
            previous = self._state
            if previous is state and state is not AttachmentState.FAULT:
                return
            self._state = state
        if detail:
            logger.info("[LoWPAN/Attach] {} -> {} ({})", previous.value, state.value, detail)
        else:
            logger.info("[LoWPAN/Attach] {} -> {}", previous.value, state.value)
        self.bus.publish(CoreEvent(
            kind=EventKind.ATTACHMENT_STATE,
            source=self.source,
            state=state.value,
            detail=detail,
        ))

    def _dispatch(self, fn: Callable[..., None], *args: Any) -> None:
        """Run *fn* on the controller's loop, whatever thread we are on."""
        loop = self._loop
        if loop is None:
            fn(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(fn, *args)

    # -- ManagerCallback -----------------------------------------------------

    def on_interface_added(self, interface: LowpanInterface) -> None:
        self._dispatch(self._interface_added, interface)

    def on_interface_removed(self, interface: LowpanInterface) -> None:
        self._dispatch(self._interface_removed, interface)

    def _interface_added(self, interface: LowpanInterface) -> None:
        if self._interface is not None:
            return
        self._interface = interface
        self._listener = _InterfaceListener(self, interface)
        interface.register_callback(self._listener)
        logger.info("[LoWPAN/Attach] using interface {}", interface.name)
        if interface.state is AttachmentState.ATTACHED:
            params = interface.provisioning_params()
            self._identity = params.identity if params else None
            self._transition(AttachmentState.ATTACHED)
        if self.auto_provision and self._loop is not None:
            self._ensure_task = supervised_task(self._auto_ensure(), name="lowpan-ensure")

    async def _auto_ensure(self) -> None:
        try:
            await self.ensure_attached()
        except LowpanError as exc:
            logger.error("[LoWPAN/Attach] unable to provision {!r}: {}", self.network_name, exc)

    def _interface_removed(self, interface: LowpanInterface) -> None:
        if interface is not self._interface:
            return
        self._release_interface()
        if self._scan is not None and self._scan.active:
            supervised_task(self._scan.stop(), name="lowpan-scan-abort")
        if self._join_task is not None:
            self._join_task.cancel()
        logger.warning("[LoWPAN/Attach] interface {} removed", interface.name)
        self._transition(AttachmentState.OFFLINE, "interface removed")

    def _release_interface(self) -> None:
        iface, listener = self._interface, self._listener
        self._interface = None
        self._listener = None
        self._identity = None
        if iface is not None and listener is not None:
            iface.unregister_callback(listener)

    # -- interface notifications ---------------------------------------------

    def _interface_state(self, interface: LowpanInterface, state: AttachmentState) -> None:
        if interface is not self._interface:
            return
        current = self.state
        if state is AttachmentState.OFFLINE and current in (
            AttachmentState.ATTACHING,
            AttachmentState.FAULT,
        ):
            # Outcome of the attempt arrives as attached or provisioning error.
            logger.debug("[LoWPAN/Attach] ignoring offline report while {}", current.value)
            return
        self._transition(state, "interface fault" if state is AttachmentState.FAULT else "")

    def _interface_identity(self, interface: LowpanInterface, identity: NetworkIdentity | None) -> None:
        if interface is not self._interface:
            return
        self._identity = identity
        self.bus.publish(CoreEvent(
            kind=EventKind.IDENTITY,
            source=self.source,
            detail=identity.name if identity else "",
        ))

    def _interface_error(self, interface: LowpanInterface, detail: str) -> None:
        if interface is not self._interface:
            return
        if self.state is AttachmentState.ATTACHING:
            logger.error("[LoWPAN/Attach] could not provision network: {}", detail)
            self._transition(AttachmentState.FAULT, detail)
            return
        logger.error("[LoWPAN/Attach] provisioning error: {}", detail)
        self.bus.publish(CoreEvent(kind=EventKind.ERROR, source=self.source, detail=detail))
