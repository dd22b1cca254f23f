"""LoWPAN interface backed by wpantund's ``wpanctl`` command line tool.

``WpanctlInterface`` issues ``form``/``join``/``leave``/``scan`` through
``wpanctl -I <iface>`` and derives state from ``wpanctl status``.  Form and
join run in a background task so the request returns immediately; the
result is reported through the interface callbacks like any other driver.

``WpanctlDriver`` polls the daemon and registers the interface with a
``LowpanManager`` while it answers (interface added) and unregisters it when
it stops answering (interface removed).

Example ``wpanctl status`` output::

    wpan0 => [
        "NCP:State" => "associated"
        "Daemon:Enabled" => true
        "Network:Name" => "lowpan_sample"
        "Network:XPANID" => 0xDEAD00BEEF00CAFE
        "Network:PANID" => 0x1234
        "NCP:Channel" => 11
        "Network:NodeType" => "leader"
    ]
"""

from __future__ import annotations

import asyncio
import re
from typing import AsyncIterator

from loguru import logger

from meshlink.errors import LowpanError
from meshlink.lowpan.driver import LowpanInterface, LowpanManager
from meshlink.lowpan.models import (
    AttachmentState,
    Beacon,
    BeaconFlag,
    NetworkIdentity,
    ProvisioningParams,
    Role,
    rssi_to_lqi,
)
from meshlink.tasks import cancel_and_wait, supervised_task

_PROP_RE = re.compile(r'^\s*"([^"]+)"\s*=>\s*(.*?)\s*$')

_ROLE_MAP: dict[str, Role] = {
    "leader": Role.LEADER,
    "router": Role.ROUTER,
    "end-device": Role.END_DEVICE,
    "sleepy-end-device": Role.END_DEVICE,
}

# NCP states in which the stack holds network credentials.
_PROVISIONED_STATES = ("associated", "associating", "isolated", "commissioned")


def parse_status(output: str) -> dict[str, str]:
    """Turn ``wpanctl status`` output into a property dict (quotes stripped)."""
    props: dict[str, str] = {}
    for line in output.splitlines():
        m = _PROP_RE.match(line)
        if m:
            props[m.group(1)] = m.group(2).strip('"')
    return props


def map_ncp_state(ncp_state: str) -> AttachmentState:
    s = ncp_state.lower()
    if s.startswith("associated"):
        return AttachmentState.ATTACHED
    if s in ("associating", "isolated", "commissioned", "credentials_needed"):
        return AttachmentState.ATTACHING
    if "fault" in s:
        return AttachmentState.FAULT
    return AttachmentState.OFFLINE


def _parse_int(text: str, default: int = 0) -> int:
    try:
        return int(text, 0)
    except (TypeError, ValueError):
        return default


def _parse_hex_bytes(text: str) -> bytes:
    text = text.strip().strip("[]")
    if text.lower().startswith("0x"):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError:
        return b""


def identity_from_status(props: dict[str, str]) -> NetworkIdentity | None:
    name = props.get("Network:Name", "")
    if not name:
        return None
    xpanid = _parse_hex_bytes(props.get("Network:XPANID", ""))
    return NetworkIdentity(
        name=name,
        xpanid=xpanid if len(xpanid) == 8 else b"",
        panid=_parse_int(props.get("Network:PANID", "0")) & 0xFFFF,
        channel=_parse_int(props.get("NCP:Channel", "0")) & 0xFF,
    )


def parse_scan_line(line: str) -> Beacon | None:
    """Parse one row of the ``wpanctl scan`` table, or return ``None``.

    Row layout: ``idx | joinable | "name" | panid | ch | xpanid | hwaddr | rssi [| lqi]``
    """
    cells = [c.strip() for c in line.split("|")]
    if len(cells) < 8 or not cells[0].isdigit():
        return None
    try:
        rssi = int(cells[7])
    except ValueError:
        return None
    xpanid = _parse_hex_bytes(cells[5])
    identity = NetworkIdentity(
        name=cells[2].strip('"'),
        xpanid=xpanid if len(xpanid) == 8 else b"",
        panid=_parse_int(cells[3]) & 0xFFFF,
        channel=_parse_int(cells[4]) & 0xFF,
    )
    lqi = _parse_int(cells[8], -1) if len(cells) > 8 else -1
    if not 0 <= lqi <= 255:
        lqi = rssi_to_lqi(rssi)
    flags = frozenset({BeaconFlag.CAN_ASSIST}) if cells[1].upper() == "YES" else frozenset()
    return Beacon(
        identity=identity,
        address=_parse_hex_bytes(cells[6]),
        rssi=rssi,
        lqi=lqi,
        flags=flags,
    )


class WpanctlInterface(LowpanInterface):
    """Interface driven through ``wpanctl``.

    Parameters
    ----------
    name:
        Network interface name managed by wpantund (e.g. ``"wpan0"``).
    wpanctl_path:
        Executable to run.
    command_timeout:
        Seconds before a wpanctl invocation is abandoned.
    """

    def __init__(
        self,
        name: str = "wpan0",
        wpanctl_path: str = "wpanctl",
        command_timeout: float = 30.0,
    ) -> None:
        super().__init__(name)
        self.wpanctl_path = wpanctl_path
        self.command_timeout = command_timeout
        self._state = AttachmentState.OFFLINE
        self._role = Role.DETACHED
        self._enabled = False
        self._params: ProvisioningParams | None = None
        self._op_task: asyncio.Task | None = None

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

    # -- command runner ------------------------------------------------------

    async def _run_command(self, *args: str) -> tuple[int, str, str]:
        cmd = [self.wpanctl_path, "-I", self.name, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as exc:
            logger.error("[LoWPAN/wpanctl] cannot run {}: {}", self.wpanctl_path, exc)
            return 127, "", str(exc)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return 124, "", f"wpanctl {args[0]} timed out"
        return (
            process.returncode if process.returncode is not None else 1,
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def _check(self, *args: str) -> str:
        rc, out, err = await self._run_command(*args)
        if rc != 0:
            raise LowpanError(err or out or f"wpanctl {args[0]} exited with {rc}")
        return out

    # -- state polling -------------------------------------------------------

    async def refresh(self) -> bool:
        """Re-read ``wpanctl status``; notify on changes.

        Returns ``False`` when the daemon or interface does not answer.
        """
        rc, out, err = await self._run_command("status")
        if rc != 0:
            logger.debug("[LoWPAN/wpanctl] status failed ({}): {}", rc, err or out)
            return False
        self._apply_status(parse_status(out))
        return True

    def _apply_status(self, props: dict[str, str]) -> None:
        ncp_state = props.get("NCP:State", "offline")
        state = map_ncp_state(ncp_state)
        self._enabled = props.get("Daemon:Enabled", "true").lower() == "true"
        self._role = _ROLE_MAP.get(props.get("Network:NodeType", "").lower(), Role.DETACHED)

        identity = None
        if ncp_state.lower().startswith(_PROVISIONED_STATES):
            identity = identity_from_status(props)
        old_identity = self._params.identity if self._params else None
        if identity != old_identity:
            self._params = ProvisioningParams(identity) if identity else None
            self._notify_identity(identity)
        if state is not self._state:
            logger.debug("[LoWPAN/wpanctl] {} state {} ({})", self.name, state.value, ncp_state)
            self._state = state
            self._notify_state(state)

    # -- commands ------------------------------------------------------------

    async def set_enabled(self, enabled: bool) -> None:
        await self._check("setprop", "Daemon:Enabled", "true" if enabled else "false")
        await self.refresh()

    async def form(self, params: ProvisioningParams) -> None:
        args = ["form", params.identity.name]
        if params.identity.channel:
            args += ["-c", str(params.identity.channel)]
        self._start_op("form", params, args)

    async def join(self, params: ProvisioningParams) -> None:
        ident = params.identity
        args = ["join", ident.name]
        if ident.panid:
            args += ["-p", f"0x{ident.panid:04X}"]
        if ident.xpanid:
            args += ["-x", ident.xpanid.hex()]
        if ident.channel:
            args += ["-c", str(ident.channel)]
        self._start_op("join", params, args)

    async def leave(self) -> None:
        await self._check("leave")
        await self.refresh()

    def _start_op(self, kind: str, params: ProvisioningParams, args: list[str]) -> None:
        if self._op_task is not None and not self._op_task.done():
            raise LowpanError(f"{kind} rejected: another request is running")
        self._op_task = supervised_task(self._provision(kind, params, args), name=f"wpanctl-{kind}")

    async def _provision(self, kind: str, params: ProvisioningParams, args: list[str]) -> None:
        try:
            if params.credential is not None:
                await self._check("setprop", "Network:Key", "--data", params.credential.to_hex())
            await self._check(*args)
        except LowpanError as exc:
            logger.warning("[LoWPAN/wpanctl] {} of {!r} failed: {}", kind, params.identity.name, exc)
            self._notify_provision_error(str(exc))
            return
        await self.refresh()

    async def net_scan(self, duration: float) -> AsyncIterator[Beacon]:
        cmd = [self.wpanctl_path, "-I", self.name, "scan", "-t", str(int(duration * 1000))]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as exc:
            raise LowpanError(f"cannot run {self.wpanctl_path}: {exc}") from exc
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration + 5.0
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    line = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                if not line:
                    break
                beacon = parse_scan_line(line.decode("utf-8", errors="replace"))
                if beacon is not None:
                    yield beacon
        finally:
            if process.returncode is None:
                process.kill()
            await process.wait()

    async def close(self) -> None:
        await cancel_and_wait(self._op_task)
        self._op_task = None


class WpanctlDriver:
    """Presence poller turning wpantund availability into manager events."""

    def __init__(
        self,
        manager: LowpanManager,
        interface: WpanctlInterface,
        poll_interval: float = 2.0,
    ) -> None:
        self.manager = manager
        self.interface = interface
        self.poll_interval = poll_interval
        self._task: asyncio.Task | None = None
        self._present = False

    def register(self) -> None:
        if self._task is None or self._task.done():
            self._task = supervised_task(self._poll_loop(), name="wpanctl-poll")
            logger.info("[LoWPAN/wpanctl] watching {}", self.interface.name)

    async def _poll_loop(self) -> None:
        while True:
            ok = await self.interface.refresh()
            if ok and not self._present:
                self._present = self.manager.add_interface(self.interface)
            elif not ok and self._present:
                self._present = False
                self.manager.remove_interface(self.interface)
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        """Stop polling and unregister the interface."""
        await cancel_and_wait(self._task)
        self._task = None
        await self.interface.close()
        if self._present:
            self._present = False
            self.manager.remove_interface(self.interface)
        logger.info("[LoWPAN/wpanctl] released {}", self.interface.name)
