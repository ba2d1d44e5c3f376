"""Link daemon -- keeps the RS-485 link to the remote controller up.

Builds the transport, transaction manager and connection monitor once,
logs their events, and runs until SIGINT or SIGTERM.  Downstream
consumers (status broadcast, sensor polling) subscribe to the same
``Context`` objects.

Example:
    Run from the command line::

        rs485link rs485link.toml -v
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass

from rs485link.config import LinkConfig, find_config, load_config
from rs485link.monitor import ConnectionMonitor
from rs485link.transaction import TransactionManager
from rs485link.transport import LinkTransport

log = logging.getLogger(__name__)


@dataclass
class Context:
    """Components shared by everything talking to the remote device."""

    config: LinkConfig
    transport: LinkTransport
    manager: TransactionManager
    monitor: ConnectionMonitor


def build_context(cfg: dict) -> Context:
    """Construct the components from a load_config() result.

    Example:
        >>> ctx = build_context(load_config(None))
        >>> ctx.monitor.interval_ms
        7500
    """
    link = cfg["link"]
    transport = LinkTransport(link)
    return Context(
        config=link,
        transport=transport,
        manager=TransactionManager(transport, cfg["request_timeout_ms"]),
        monitor=ConnectionMonitor(transport, cfg["heartbeat_timeout_ms"]),
    )


def _log_events(ctx: Context) -> None:
    """Log link and monitor events (stand-in for the status broadcast)."""
    ctx.transport.on_status.connect(
        lambda status: log.info("link status: %s", status.value)
    )
    ctx.transport.on_error.connect(
        lambda exc: log.warning("link error: %s", exc)
    )
    ctx.transport.on_message.connect(
        lambda message: log.debug("message: %s", message)
    )
    ctx.monitor.on_change.connect(
        lambda report: log.debug("status update: %s", report)
    )


async def run(ctx: Context, shutdown: asyncio.Event) -> None:
    """Bring the link up and keep it running until *shutdown* is set."""
    _log_events(ctx)
    ctx.manager.attach()
    ctx.monitor.attach()
    try:
        await ctx.transport.init()
        ctx.monitor.start()
        await shutdown.wait()
    finally:
        await ctx.monitor.stop()
        ctx.manager.detach()
        ctx.monitor.detach()
        await ctx.transport.destroy()


async def _main(ctx: Context) -> None:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, shutdown.set)
    await run(ctx, shutdown)


def main() -> None:
    """CLI entry point -- parse args, load config, run the daemon.

    Without a config argument, ``RS485_CONFIG`` names the file, else
    ``rs485link.toml`` is used when found in ``./`` or ``/etc/rs485link/``;
    otherwise built-in defaults apply.
    """
    parser = argparse.ArgumentParser(description="RS-485 link daemon")
    parser.add_argument("config", nargs="?", help="path to TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=level,
    )

    config_path = find_config(args.config)
    cfg = load_config(config_path)
    link = cfg["link"]

    log.info(
        "starting: config=%s port=%s baudrate=%d heartbeat_timeout=%dms",
        config_path or "(defaults)", link.port, link.baudrate,
        cfg["heartbeat_timeout_ms"],
    )
    asyncio.run(_main(build_context(cfg)))
    log.info("shutting down")


if __name__ == "__main__":
    main()
