"""Driver contract for LoWPAN interfaces and the interface registry.

Key classes
-----------
- ``InterfaceCallback``: state / identity / provisioning-error notifications
  from one interface.  Methods default to no-ops.
- ``LowpanInterface``: abstract interface: form, join, leave, scan.
  ``form``/``join`` only *issue* the request; the outcome arrives later via
  the registered callbacks.
- ``ManagerCallback``: interface-added / interface-removed notifications.
- ``LowpanManager``: explicitly owned registry of the (single) interface.
  Drivers call ``add_interface``/``remove_interface``; consumers subscribe.

Callbacks may be delivered from any thread.  Consumers that need the event
loop must marshal themselves.
"""

from __future__ import annotations

import abc
import threading
from typing import AsyncIterator

from loguru import logger

from meshlink.lowpan.models import (
    AttachmentState,
    Beacon,
    NetworkIdentity,
    ProvisioningParams,
    Role,
)


class InterfaceCallback:
    """Receiver for notifications from one :class:`LowpanInterface`."""

    def on_state_changed(self, state: AttachmentState) -> None:
        pass

    def on_identity_changed(self, identity: NetworkIdentity | None) -> None:
        pass

    def on_provision_error(self, detail: str) -> None:
        pass


class LowpanInterface(abc.ABC):
    """One LoWPAN network interface (radio co-processor plus its stack)."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._callbacks: list[InterfaceCallback] = []
        self._cb_lock = threading.Lock()

    # -- callback registration -----------------------------------------------

    def register_callback(self, callback: InterfaceCallback) -> None:
        with self._cb_lock:
            if callback not in self._callbacks:
                self._callbacks.append(callback)

    def unregister_callback(self, callback: InterfaceCallback) -> None:
        with self._cb_lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def _snapshot_callbacks(self) -> list[InterfaceCallback]:
        with self._cb_lock:
            return list(self._callbacks)

    def _notify_state(self, state: AttachmentState) -> None:
        for cb in self._snapshot_callbacks():
            try:
                cb.on_state_changed(state)
            except Exception as exc:
                logger.error("[LoWPAN/{}] state callback error: {}", self.name, exc)

    def _notify_identity(self, identity: NetworkIdentity | None) -> None:
        for cb in self._snapshot_callbacks():
            try:
                cb.on_identity_changed(identity)
            except Exception as exc:
                logger.error("[LoWPAN/{}] identity callback error: {}", self.name, exc)

    def _notify_provision_error(self, detail: str) -> None:
        for cb in self._snapshot_callbacks():
            try:
                cb.on_provision_error(detail)
            except Exception as exc:
                logger.error("[LoWPAN/{}] error callback error: {}", self.name, exc)

    # -- queries -------------------------------------------------------------

    @property
    @abc.abstractmethod
    def state(self) -> AttachmentState:
        """Current attachment state as reported by the stack."""

    @property
    @abc.abstractmethod
    def role(self) -> Role:
        """Current role in the mesh."""

    @property
    @abc.abstractmethod
    def enabled(self) -> bool:
        """Whether the interface is administratively up."""

    @abc.abstractmethod
    def provisioning_params(self) -> ProvisioningParams | None:
        """The network the interface is provisioned on, or ``None``."""

    @property
    def is_provisioned(self) -> bool:
        return self.provisioning_params() is not None

    # -- commands ------------------------------------------------------------

    @abc.abstractmethod
    async def set_enabled(self, enabled: bool) -> None:
        """Bring the interface up or down.  Raises ``LowpanError``."""

    @abc.abstractmethod
    async def form(self, params: ProvisioningParams) -> None:
        """Request formation of a new network.  Raises ``LowpanError``."""

    @abc.abstractmethod
    async def join(self, params: ProvisioningParams) -> None:
        """Request attachment to an existing network.  Raises ``LowpanError``."""

    @abc.abstractmethod
    async def leave(self) -> None:
        """Drop the current network.  Raises ``LowpanError``."""

    @abc.abstractmethod
    def net_scan(self, duration: float) -> AsyncIterator[Beacon]:
        """Yield beacons heard within *duration* seconds, then finish."""


class ManagerCallback:
    """Receiver for interface presence notifications."""

    def on_interface_added(self, interface: LowpanInterface) -> None:
        pass

    def on_interface_removed(self, interface: LowpanInterface) -> None:
        pass


class LowpanManager:
    """Registry holding at most one LoWPAN interface.

    Only the first interface added is tracked; further ones are ignored
    until it is removed.
    """

    def __init__(self) -> None:
        self._interface: LowpanInterface | None = None
        self._callbacks: list[ManagerCallback] = []
        self._lock = threading.Lock()

    def get_interface(self) -> LowpanInterface | None:
        with self._lock:
            return self._interface

    def register_callback(self, callback: ManagerCallback) -> None:
        with self._lock:
            if callback not in self._callbacks:
                self._callbacks.append(callback)

    def unregister_callback(self, callback: ManagerCallback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def add_interface(self, interface: LowpanInterface) -> bool:
        """Register *interface*.  Returns ``False`` if one is already present."""
        with self._lock:
            if self._interface is not None:
                logger.warning(
                    "[LoWPAN/Manager] ignoring {}: {} already registered",
                    interface.name, self._interface.name,
                )
                return False
            self._interface = interface
            callbacks = list(self._callbacks)
        logger.info("[LoWPAN/Manager] interface added: {}", interface.name)
        for cb in callbacks:
            try:
                cb.on_interface_added(interface)
            except Exception as exc:
                logger.error("[LoWPAN/Manager] added callback error: {}", exc)
        return True

    def remove_interface(self, interface: LowpanInterface) -> bool:
        with self._lock:
            if self._interface is not interface:
                return False
            self._interface = None
            callbacks = list(self._callbacks)
        logger.info("[LoWPAN/Manager] interface removed: {}", interface.name)
        for cb in callbacks:
            try:
                cb.on_interface_removed(interface)
            except Exception as exc:
                logger.error("[LoWPAN/Manager] removed callback error: {}", exc)
        return True
