"""Mesh node: wires the attachment controller to the link relay.

The node owns one ``LowpanManager``, one ``AttachmentController`` and one
``LinkRelay`` and keeps them in step through the bus:

- attached        -> link transport available, then listen (receiver) or
  connect to the configured server (transmitter);
- offline / fault -> link transport gone (connection and listener closed).

Shutdown runs in the reverse order of acquisition: stop any scan, drop the
link connection, stop listening, unregister from the interface, release the
driver.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from meshlink.bus.events import CoreEvent, EventKind
from meshlink.bus.queue import EventSubscription, MessageBus
from meshlink.config.loader import check_required
from meshlink.config.schema import Config
from meshlink.link.relay import LinkRelay
from meshlink.lowpan.attachment import AttachmentController
from meshlink.lowpan.driver import LowpanInterface, LowpanManager
from meshlink.lowpan.models import AttachmentState, Credential
from meshlink.lowpan.simulated import SimulatedInterface
from meshlink.lowpan.wpanctl import WpanctlDriver, WpanctlInterface
from meshlink.tasks import cancel_and_wait, supervised_task


class MeshNode:
    """One receiver or transmitter node.

    Parameters
    ----------
    config:
        Validated with ``check_required`` on ``start()``.
    bus:
        Shared bus; a private one is created when omitted.
    manager:
        Interface registry; a private one is created when omitted.
    interface:
        Interface to register instead of the one the configured driver
        would build (tests pass a ``SimulatedInterface`` here).
    """

    def __init__(
        self,
        config: Config,
        *,
        bus: MessageBus | None = None,
        manager: LowpanManager | None = None,
        interface: LowpanInterface | None = None,
    ) -> None:
        self.config = config
        self.bus = bus or MessageBus()
        self.manager = manager or LowpanManager()
        self.role = config.link.role

        lowpan = config.lowpan
        self.controller = AttachmentController(
            self.manager,
            self.bus,
            network_name=lowpan.network_name,
            channel=lowpan.channel,
            scan_duration=lowpan.scan_duration,
            provision_mode=lowpan.provision_mode,
            auto_provision=lowpan.auto_provision,
        )
        link = config.link
        self.relay = LinkRelay(
            self.bus,
            host=link.listen_host,
            port=link.port,
            connect_timeout=link.connect_timeout,
            teardown_on_write_error=link.teardown_on_write_error,
        )

        self._interface = interface
        self._driver: WpanctlDriver | None = None
        self._follow_sub: EventSubscription | None = None
        self._follow_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Validate configuration and bring the node up.

        Raises ``ConfigurationError`` before touching any resource.
        """
        check_required(self.config)
        if self.config.lowpan.network_key:
            self.controller.credential = Credential.from_hex(self.config.lowpan.network_key.strip())
        self._running = True
        self._follow_sub = self.bus.subscribe(EventKind.ATTACHMENT_STATE)
        self._follow_task = supervised_task(self._follow_attachment(self._follow_sub), name="node-follow")
        self.controller.start()

        if self._interface is not None:
            self.manager.add_interface(self._interface)
        elif self.config.lowpan.driver == "simulated":
            self._interface = SimulatedInterface(self.config.lowpan.interface_name or "wpan0")
            self.manager.add_interface(self._interface)
        else:
            lowpan = self.config.lowpan
            self._interface = WpanctlInterface(
                lowpan.interface_name,
                wpanctl_path=lowpan.wpanctl_path,
                command_timeout=lowpan.command_timeout,
            )
            self._driver = WpanctlDriver(self.manager, self._interface, poll_interval=lowpan.poll_interval)
            self._driver.register()

        logger.info(
            f"[Node] started: role={self.role} driver={self.config.lowpan.driver} "
            f"network={self.config.lowpan.network_name!r}"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            await self.controller.stop_scan()
        except Exception as exc:
            logger.error("[Node] scan stop error: {}", exc)
        await cancel_and_wait(self._follow_task)
        if self._follow_sub is not None:
            self._follow_sub.close()
        try:
            await self.relay.disconnect()
            await self.relay.stop_listening()
        except Exception as exc:
            logger.error("[Node] link stop error: {}", exc)
        try:
            await self.controller.stop()
        except Exception as exc:
            logger.error("[Node] attachment stop error: {}", exc)
        if self._driver is not None:
            try:
                await self._driver.close()
            except Exception as exc:
                logger.error("[Node] driver release error: {}", exc)
        logger.info("[Node] stopped")

    async def send(self, value: int) -> bool:
        """Send one value to the peer (transmitter role)."""
        return await self.relay.send(value)

    # -- attachment follower -------------------------------------------------

    async def _follow_attachment(self, sub: EventSubscription) -> None:
        async for event in sub:
            await self._on_attachment(event)

    async def _on_attachment(self, event: CoreEvent) -> None:
        if event.state == AttachmentState.ATTACHED.value:
            await self.relay.set_transport(True)
            await self._bring_up_link()
        elif event.state in (AttachmentState.OFFLINE.value, AttachmentState.FAULT.value):
            await self.relay.set_transport(False)

    async def _bring_up_link(self) -> None:
        link = self.config.link
        if self.role == "receiver":
            if not self.relay.listening:
                await self.relay.listen(link.port)
        elif self.role == "transmitter" and link.auto_connect:
            if not self.relay.connected:
                await self.relay.connect(link.server_address, link.port)
