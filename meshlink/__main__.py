"""Command line entry point.

``python -m meshlink run``  brings a receiver or transmitter node up and
prints attachment state, link state and received values.

``python -m meshlink scan`` lists the networks heard on the interface.
"""

import argparse
import asyncio
import signal
import sys

from loguru import logger

from meshlink.bus.events import CoreEvent, EventKind
from meshlink.bus.queue import EventSubscription
from meshlink.config.loader import load_config
from meshlink.config.schema import Config
from meshlink.errors import ConfigurationError, LowpanError
from meshlink.link.relay import LinkState
from meshlink.lowpan.driver import LowpanInterface
from meshlink.lowpan.models import Beacon, bytes_to_addr_hex, bytes_to_hex, random_network_name
from meshlink.lowpan.scanner import ScanSession
from meshlink.lowpan.simulated import SimulatedInterface
from meshlink.lowpan.wpanctl import WpanctlInterface
from meshlink.node import MeshNode
from meshlink.tasks import cancel_and_wait, supervised_task

# Shown in place of a value while no peer is connected.
NO_VALUE = "XXXX"


def setup_logging(level: str = "INFO", debug: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if debug else level.upper())


# ---------------------------------------------------------------------------
# Presenter
# ---------------------------------------------------------------------------

def format_event(event: CoreEvent) -> str:
    if event.kind is EventKind.VALUE_RECEIVED:
        return f"value  {event.value:>4}"
    if event.kind is EventKind.IDENTITY:
        return f"network {event.detail or '-'}"
    if event.kind is EventKind.LINK_STATE:
        line = f"link   {event.state}"
        if event.state == LinkState.LOST.value:
            line += f"  {NO_VALUE}"
    elif event.kind is EventKind.ATTACHMENT_STATE:
        line = f"mesh   {event.state}"
    else:
        line = f"error  [{event.source}]"
    if event.detail:
        line += f"  ({event.detail})"
    return line


async def present(sub: EventSubscription) -> None:
    async for event in sub:
        print(format_event(event), flush=True)


def format_beacon(beacon: Beacon) -> str:
    ident = beacon.identity
    return (
        f"{ident.name:<16} xpanid={bytes_to_hex(ident.xpanid) or '-':<16} "
        f"ch={ident.channel:<3} panid=0x{ident.panid:04x} "
        f"addr={bytes_to_addr_hex(beacon.address) or '-'} "
        f"signal={beacon.signal_quality:<3} lqi={beacon.lqi:<3}"
        f"{' can-assist' if beacon.can_assist else ''}"
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _read_values(node: MeshNode) -> None:
    """Send every integer typed on stdin; EOF ends the loop."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    while True:
        line = await reader.readline()
        if not line:
            return
        text = line.decode(errors="replace").strip()
        if not text:
            continue
        try:
            value = int(text)
        except ValueError:
            print(f"not a number: {text!r}", file=sys.stderr)
            continue
        try:
            if not await node.send(value):
                print(f"dropped {value}: no connection", file=sys.stderr)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)


async def run_node(config: Config) -> None:
    node = MeshNode(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    sub = node.bus.subscribe()
    presenter = supervised_task(present(sub), name="presenter")
    try:
        await node.start()
        if node.role == "transmitter":
            sender = supervised_task(_read_values(node), name="stdin")
            stopper = asyncio.ensure_future(stop.wait())
            await asyncio.wait({sender, stopper}, return_when=asyncio.FIRST_COMPLETED)
            await cancel_and_wait(sender)
            await cancel_and_wait(stopper)
        else:
            await stop.wait()
    finally:
        await node.stop()
        sub.close()
        await cancel_and_wait(presenter)


async def _open_interface(config: Config) -> LowpanInterface:
    lowpan = config.lowpan
    if lowpan.driver == "simulated":
        return SimulatedInterface(lowpan.interface_name or "wpan0")
    iface = WpanctlInterface(
        lowpan.interface_name,
        wpanctl_path=lowpan.wpanctl_path,
        command_timeout=lowpan.command_timeout,
    )
    if not await iface.refresh():
        raise LowpanError(f"interface {lowpan.interface_name} is not available")
    return iface


async def run_scan(config: Config, duration: float | None) -> int:
    iface = await _open_interface(config)
    session = ScanSession(
        iface,
        duration=duration or config.lowpan.scan_duration,
        on_beacon=lambda b: print(format_beacon(b), flush=True),
    )
    await session.start()
    await session.wait()
    print(f"{session.beacon_count} network(s) found")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(prog="meshlink", description="LoWPAN mesh value link")
    parser.add_argument("--config", type=str, help="Path to configuration file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--driver", choices=["wpanctl", "simulated"], help="Interface driver (overrides config)"
    )
    sub = parser.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Attach to the mesh and run the value link")
    run_p.add_argument("--role", choices=["receiver", "transmitter", "none"], help="Link role")
    run_p.add_argument("--server", type=str, help="Receiver address (transmitter role)")
    run_p.add_argument(
        "--new-network", action="store_true", help="Form a freshly named network (LoWPAN_<n>)"
    )

    scan_p = sub.add_parser("scan", help="List networks in range")
    scan_p.add_argument("--duration", type=float, help="Scan duration in seconds")

    args = parser.parse_args()
    config = load_config(args.config)
    setup_logging(config.log_level, args.debug)

    if args.driver:
        config.lowpan.driver = args.driver
    command = args.command or "run"

    try:
        if command == "scan":
            sys.exit(asyncio.run(run_scan(config, args.duration)))
        if getattr(args, "role", None):
            config.link.role = args.role
        if getattr(args, "server", None):
            config.link.server_address = args.server
        if getattr(args, "new_network", False):
            config.lowpan.network_name = random_network_name()
            config.lowpan.provision_mode = "form"
        asyncio.run(run_node(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except ConfigurationError as e:
        logger.error("Configuration error:\n{}", e)
        sys.exit(2)
    except LowpanError as e:
        logger.error(f"LoWPAN error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
