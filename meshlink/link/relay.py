"""TCP relay holding at most one live peer connection.

The relay either listens on the well-known port (receiver role) or dials a
known address (transmitter role).  Whichever way a connection arrives, it
*replaces* the current one: the old socket is closed and its reader task is
awaited before the new reader starts, so two readers never deliver samples
at the same time.

Tasks
-----
- accept loop: one per ``listen()``; individual accept errors are logged
  and the loop carries on.
- read loop: one per live connection; ends on EOF, read error, or when
  its socket is closed by a replacement / ``disconnect()``.

Nothing is retried: a failed connect, a lost peer or a dropped network
leaves the relay in ``LOST`` / ``NO_TRANSPORT`` until the caller acts again.
"""

from __future__ import annotations

import asyncio
import socket
import threading
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from meshlink.bus.events import CoreEvent, EventKind
from meshlink.bus.queue import MessageBus
from meshlink.link.protocol import DEFAULT_PORT, encode_value, read_value
from meshlink.tasks import cancel_and_wait, supervised_task

# Seconds a retired reader gets to notice its closed socket before it is cancelled.
_READER_STOP_TIMEOUT = 1.0


class LinkState(str, Enum):
    """Link status as shown to the presenter."""

    NO_TRANSPORT = "no_transport"
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOST = "lost"


@dataclass(eq=False)
class _Connection:
    serial: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    peer: str
    inbound: bool
    read_task: asyncio.Task | None = None
    retired: bool = False


def _format_addr(addr: tuple) -> str:
    host, port = addr[0], addr[1]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class LinkRelay:
    """Bidirectional one-byte value stream with a single peer.

    Parameters
    ----------
    bus:
        Where link state, received values and errors are published.
    host:
        Interface to bind the listener on (default ``"::"``, dual-stack).
    port:
        Well-known port used by both roles (default 23456).
    connect_timeout:
        Seconds allowed for name resolution and for the TCP handshake.
    teardown_on_write_error:
        Treat a failed write like a failed read: close the socket and go
        ``LOST``.  When off, the error is only logged and reported.
    transport_available:
        Initial network availability; ``False`` starts in ``NO_TRANSPORT``.
    """

    source = "link"

    def __init__(
        self,
        bus: MessageBus,
        *,
        host: str = "::",
        port: int = DEFAULT_PORT,
        connect_timeout: float = 5.0,
        teardown_on_write_error: bool = True,
        transport_available: bool = False,
    ) -> None:
        self.bus = bus
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.teardown_on_write_error = teardown_on_write_error
        self._state = LinkState.IDLE if transport_available else LinkState.NO_TRANSPORT
        self._state_lock = threading.Lock()
        self._conn: _Connection | None = None
        self._swap_lock = asyncio.Lock()
        self._server_sock: socket.socket | None = None
        self._accept_task: asyncio.Task | None = None
        self._serial = 0
        # Bumped on every network loss; dials started before it are void.
        self._transport_epoch = 0

    # -- queries -------------------------------------------------------------

    @property
    def state(self) -> LinkState:
        with self._state_lock:
            return self._state

    @property
    def connected(self) -> bool:
        conn = self._conn
        return conn is not None and not conn.retired

    @property
    def peer(self) -> str | None:
        conn = self._conn
        return conn.peer if conn is not None else None

    @property
    def listening(self) -> bool:
        return self._server_sock is not None

    @property
    def bound_port(self) -> int | None:
        """Port actually bound by ``listen()`` (useful with port 0)."""
        if self._server_sock is None:
            return None
        return self._server_sock.getsockname()[1]

    # -- network availability ------------------------------------------------

    async def set_transport(self, available: bool) -> None:
        """Follow the mesh network coming and going.

        Losing the network closes the live connection and the listener;
        regaining it only returns to ``IDLE``: the caller re-invokes
        ``listen``/``connect``.
        """
        if available:
            if self.state is LinkState.NO_TRANSPORT:
                logger.info("[Link/Relay] network available")
                self._set_state(LinkState.IDLE)
            return
        if self.state is LinkState.NO_TRANSPORT:
            return
        logger.warning("[Link/Relay] network lost")
        self._transport_epoch += 1
        async with self._swap_lock:
            conn, self._conn = self._conn, None
            if conn is not None:
                await self._close_connection(conn)
        await self.stop_listening()
        self._set_state(LinkState.NO_TRANSPORT, "network lost")

    # -- server role ---------------------------------------------------------

    async def listen(self, port: int | None = None) -> bool:
        """Bind the listener and start the accept loop.

        Returns ``False`` (after publishing an error) if there is no network
        or the bind fails; the bind is not retried.
        """
        if self.state is LinkState.NO_TRANSPORT:
            self._report_error("cannot listen: no network")
            return False
        if self.listening:
            logger.debug("[Link/Relay] already listening on port {}", self.bound_port)
            return True
        port = self.port if port is None else port
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        try:
            sock = socket.create_server(
                (self.host, port),
                family=family,
                dualstack_ipv6=family == socket.AF_INET6 and socket.has_dualstack_ipv6(),
            )
        except OSError as exc:
            logger.error("[Link/Relay] unable to start server socket on {}: {}", port, exc)
            self._report_error(f"bind failed on port {port}: {exc}")
            return False
        sock.setblocking(False)
        self._server_sock = sock
        self._accept_task = supervised_task(self._accept_loop(sock), name="link-accept")
        logger.info("[Link/Relay] listening for incoming connections on {}:{}", self.host, self.bound_port)
        return True

    async def stop_listening(self) -> None:
        sock, self._server_sock = self._server_sock, None
        await cancel_and_wait(self._accept_task)
        self._accept_task = None
        if sock is not None:
            sock.close()
            logger.info("[Link/Relay] listener closed")

    async def _accept_loop(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        epoch = self._transport_epoch
        while True:
            try:
                client, addr = await loop.sock_accept(sock)
            except OSError as exc:
                if self._server_sock is not sock:
                    break
                logger.warning("[Link/Relay] unable to accept connection: {}", exc)
                await asyncio.sleep(0.1)
                continue
            try:
                reader, writer = await asyncio.open_connection(sock=client)
            except OSError as exc:
                logger.warning("[Link/Relay] unable to set up accepted socket: {}", exc)
                client.close()
                continue
            await self._promote(reader, writer, _format_addr(addr), inbound=True, epoch=epoch)

    # -- client role ---------------------------------------------------------

    async def connect(self, address: str, port: int | None = None) -> bool:
        """Resolve *address* and open the link to it.

        An existing connection is closed first.  On failure the relay goes
        ``LOST`` with an error event and ``False`` is returned.  If the
        network is lost while dialing, the attempt is abandoned and the
        relay stays in ``NO_TRANSPORT``.
        """
        if self.state is LinkState.NO_TRANSPORT:
            self._report_error("cannot connect: no network")
            return False
        epoch = self._transport_epoch
        port = self.port if port is None else port
        if self._conn is not None:
            logger.info("[Link/Relay] closing current connection before dialing {}", address)
            await self.disconnect()
        if epoch != self._transport_epoch:
            return False
        logger.info("[Link/Relay] connecting to {} port {}", address, port)
        self._set_state(LinkState.CONNECTING, f"{address}:{port}")

        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(address, port, type=socket.SOCK_STREAM),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            return self._connect_failed(f"host unreachable: {address}", exc, epoch)
        if not infos:
            return self._connect_failed(f"host unreachable: {address}", None, epoch)

        last_exc: BaseException | None = None
        for family, type_, proto, _, sockaddr in infos:
            if epoch != self._transport_epoch:
                logger.info("[Link/Relay] network lost while dialing {}", address)
                return False
            sock = socket.socket(family, type_, proto)
            sock.setblocking(False)
            try:
                await asyncio.wait_for(loop.sock_connect(sock, sockaddr), timeout=self.connect_timeout)
                reader, writer = await asyncio.open_connection(sock=sock)
            except (OSError, asyncio.TimeoutError) as exc:
                sock.close()
                last_exc = exc
                continue
            return await self._promote(reader, writer, _format_addr(sockaddr), inbound=False, epoch=epoch)
        return self._connect_failed(f"connect failed: {address}:{port}", last_exc, epoch)

    async def disconnect(self) -> None:
        """Close the live connection, if any."""
        async with self._swap_lock:
            conn, self._conn = self._conn, None
            if conn is None:
                return
            logger.info("[Link/Relay] disconnecting #{} ({})", conn.serial, conn.peer)
            await self._close_connection(conn)
        if self.state is not LinkState.NO_TRANSPORT:
            self._set_state(LinkState.IDLE, "disconnected")

    def _connect_failed(self, detail: str, exc: BaseException | None, epoch: int) -> bool:
        logger.warning("[Link/Relay] {}{}", detail, f" ({exc})" if exc else "")
        if epoch != self._transport_epoch:
            return False
        self._report_error(detail)
        self._set_state(LinkState.LOST, detail)
        return False

    # -- data path -----------------------------------------------------------

    async def send(self, value: int) -> bool:
        """Write one sample to the peer.

        Dropped (``False``) when no connection is live.  Raises
        ``ValueError``/``TypeError`` for values outside 0-255.
        """
        data = encode_value(value)
        conn = self._conn
        if conn is None or conn.retired:
            logger.debug("[Link/Relay] no connection, dropping value {}", value)
            return False
        try:
            conn.writer.write(data)
            await conn.writer.drain()
        except (ConnectionError, OSError) as exc:
            logger.warning("[Link/Relay] exception on write to #{}: {}", conn.serial, exc)
            self._report_error(f"write failed: {exc}", conn.serial)
            if self.teardown_on_write_error:
                self._lose(conn, f"write failed: {exc}")
            return False
        logger.debug("[Link/Relay] wrote out value {}", value)
        return True

    async def _read_loop(self, conn: _Connection) -> None:
        reason = "peer closed"
        try:
            while True:
                value = await read_value(conn.reader)
                if value is None or conn.retired:
                    break
                self.bus.publish(CoreEvent(
                    kind=EventKind.VALUE_RECEIVED,
                    source=self.source,
                    value=value,
                    connection=conn.serial,
                ))
        except (ConnectionError, OSError) as exc:
            logger.warning("[Link/Relay] error reading from #{}: {}", conn.serial, exc)
            reason = f"read failed: {exc}"
        if conn.retired:
            logger.debug("[Link/Relay] reader #{} stopped", conn.serial)
            return
        self._lose(conn, reason)

    # -- connection bookkeeping ----------------------------------------------

    async def _promote(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str,
        inbound: bool,
        epoch: int,
    ) -> bool:
        async with self._swap_lock:
            if epoch != self._transport_epoch or self.state is LinkState.NO_TRANSPORT:
                logger.info(
                    "[Link/Relay] network lost, dropping connection {} {}",
                    "from" if inbound else "to", peer,
                )
                writer.close()
                return False
            previous = self._conn
            if previous is not None:
                logger.info("[Link/Relay] replacing connection #{} ({})", previous.serial, previous.peer)
                await self._close_connection(previous)
            self._serial += 1
            conn = _Connection(self._serial, reader, writer, peer, inbound)
            self._conn = conn
            logger.info(
                "[Link/Relay] connection #{} {} {}",
                conn.serial, "from" if inbound else "to", peer,
            )
            self._set_state(LinkState.CONNECTED, peer, conn.serial)
            conn.read_task = supervised_task(self._read_loop(conn), name=f"link-reader-{conn.serial}")
        return True

    async def _close_connection(self, conn: _Connection) -> None:
        """Retire *conn* and wait for its reader to observe the closed socket."""
        conn.retired = True
        conn.writer.close()
        task = conn.read_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            done, _ = await asyncio.wait({task}, timeout=_READER_STOP_TIMEOUT)
            if not done:
                await cancel_and_wait(task)
        try:
            await conn.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def _lose(self, conn: _Connection, reason: str) -> None:
        if conn.retired:
            return
        conn.retired = True
        if self._conn is conn:
            self._conn = None
        conn.writer.close()
        logger.warning("[Link/Relay] connection #{} lost: {}", conn.serial, reason)
        self._set_state(LinkState.LOST, reason, conn.serial)

    async def close(self) -> None:
        """Close the live connection, then stop the accept loop."""
        await self.disconnect()
        await self.stop_listening()

    # -- events --------------------------------------------------------------

    def _set_state(self, state: LinkState, detail: str = "", serial: int | None = None) -> None:
        with self._state_lock:
            self._state = state
        self.bus.publish(CoreEvent(
            kind=EventKind.LINK_STATE,
            source=self.source,
            state=state.value,
            detail=detail,
            connection=serial,
        ))

    def _report_error(self, message: str, serial: int | None = None) -> None:
        self.bus.publish(CoreEvent(
            kind=EventKind.ERROR,
            source=self.source,
            detail=message,
            connection=serial,
        ))
