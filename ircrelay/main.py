"""Command-line executable component.

Responsible for parsing the command-line arguments and the configuration file,
connecting to the configured IRC networks and relaying their lines downstream.
Spawns the main event loop.

Provides a run() function, used by __main__ or directly.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import configparser
import errno
import logging
import pathlib
import sys
from collections.abc import Sequence

import structlog

from ._version import __version__
from .connection import IRCConnectionError
from .ircmessage import IRCMessage
from .manager import ConnectionManager, UnknownNetworkError

logger = structlog.get_logger()

NETWORK_SECTION_PREFIX = "network:"


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse and return the parsed command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ircrelay",
        description="Outbound IRC connections for an IRC gateway",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    cfg_dflt = pathlib.Path("ircrelay.conf")
    if not cfg_dflt.exists():
        cfg_dflt = pathlib.Path("/etc/ircrelay.conf")
    parser.add_argument("--config-file", "-c", type=pathlib.Path, default=cfg_dflt, help="Path to configuration file")

    log_levels = ("DEBUG", "INFO", "WARNING", "ERROR")
    parser.add_argument("--log-level", choices=log_levels, type=str.upper, help="Log level (overrides config)")
    log_formats = ("plain", "console", "json")
    log_dflt = "console" if sys.stdout.isatty() else "plain"
    parser.add_argument("--log-format", default=log_dflt, choices=log_formats, help="Log format")
    return parser.parse_args(argv)


def configure_logging(log_format: str) -> None:
    """Configure logging parameters."""
    renderer: structlog.typing.Processor
    if log_format == "plain":
        timestamper = None
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    elif log_format == "console":
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False)
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    elif log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        raise ValueError(f"Invalid logging format specified: {log_format}")

    # This follows structlog's "most ambitious" approach: rendering using structlog-based formatters within logging
    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if timestamper:
        processors.append(timestamper)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            *processors,
            structlog.stdlib.ExtraAdder(),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    # default level, only for events emitted before the config is parsed
    root_logger.setLevel(logging.WARN)


def configure_log_levels(override_level: str | int | None, config: configparser.SectionProxy | None = None) -> None:
    """Configure logging levels, using the config file and an override, typically given by a CLI argument."""
    if config:
        for key, level in config.items():
            this_logger_name = key if key != "root" else None
            this_logger = logging.getLogger(this_logger_name)
            this_logger.setLevel(level)

    if override_level:
        # set the level for the entire package
        logging.getLogger("ircrelay").setLevel(override_level)


def configure_raw_log(filename: str | None) -> None:
    """Configure the raw traffic log, i.e. every line sent to or received from IRC networks.

    Raw traffic never ends up in the regular logs: it is written to the given
    file, one timestamped record per line, or discarded if no file is given.
    """
    raw_logger = logging.getLogger("ircrelay.raw")
    raw_logger.propagate = False
    raw_logger.setLevel(logging.INFO)
    for old_handler in raw_logger.handlers[:]:
        raw_logger.removeHandler(old_handler)
        old_handler.close()

    if not filename:
        raw_logger.addHandler(logging.NullHandler())
        return

    handler = logging.FileHandler(filename, encoding="utf-8")
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            structlog.processors.KeyValueRenderer(key_order=["timestamp", "network", "direction", "message"]),
        ],
    )
    handler.setFormatter(formatter)
    raw_logger.addHandler(handler)
    logger.info("Logging raw IRC traffic", filename=filename)


async def connect_networks(manager: ConnectionManager, config: configparser.ConfigParser) -> None:
    """Connect to all the networks in the configuration, identifying and joining channels as configured.

    Networks that cannot be reached are logged and skipped.
    """
    for section in config.sections():
        if not section.startswith(NETWORK_SECTION_PREFIX):
            continue
        address = section[len(NETWORK_SECTION_PREFIX) :]
        network_config = config[section]
        try:
            await manager.connect(address)
            password = network_config.get("password")
            if password:
                await manager.identify(address, password)
            channels = network_config.get("channels")
            if channels:
                await manager.run_command(address, f"/join {channels}")
        except IRCConnectionError as exc:
            logger.error("Unable to set up IRC network", network=address, error=exc.reason)
        except UnknownNetworkError:
            logger.error("IRC network disconnected during setup", network=address)
        except ValueError as exc:
            logger.error(f"Invalid network configuration, {exc}", network=address)


async def relay_lines(lines: asyncio.Queue[IRCMessage]) -> None:
    """Consume the lines relayed from all IRC networks.

    This is where the router of the gateway attaches; for now, lines are only
    logged.
    """
    while True:
        msg = await lines.get()
        logger.debug("Line relayed", network=msg.network, command=msg.command, source=msg.source)
        lines.task_done()


async def start_relay(config: configparser.ConfigParser) -> None:
    """Connect to all networks, and relay lines forever."""
    loop = asyncio.get_running_loop()

    if "irc" not in config:
        logger.critical('Invalid configuration, missing section "irc"')
        raise SystemExit(-1)

    irc_config = config["irc"]
    lines: asyncio.Queue[IRCMessage] = asyncio.Queue(maxsize=irc_config.getint("queue_size", fallback=1000))
    manager = ConnectionManager(irc_config, lines)
    prom_server = None

    try:
        if "prometheus" in config:
            from .prometheus import PrometheusServer

            prom_server = PrometheusServer(config["prometheus"], manager.metrics_registry)
            prom_server.attach(loop)

        await connect_networks(manager, config)
        if not manager.networks:
            logger.warning("Not connected to any IRC network")

        await relay_lines(lines)  # run forever
    except OSError as exc:
        logger.critical(f"System error: {exc.strerror}", errno=errno.errorcode[exc.errno])
        raise SystemExit(-2) from exc
    finally:
        await manager.shutdown(irc_config.get("quit_message"))
        if prom_server:
            prom_server.detach()


def run(argv: Sequence[str] | None = None) -> None:
    """Entry point."""
    options = parse_args(argv)

    configure_logging(options.log_format)
    configure_log_levels(options.log_level or logging.INFO)
    logger.info("Starting IRCRelay", config_file=str(options.config_file), version=__version__)

    config = configparser.ConfigParser(strict=True)
    try:
        with options.config_file.open(encoding="utf-8") as config_fh:
            config.read_file(config_fh)
    except OSError as exc:
        logger.critical(f"Cannot open configuration file: {exc.strerror}", errno=errno.errorcode[exc.errno])
        raise SystemExit(-1) from exc
    except configparser.Error as exc:
        msg = repr(exc).replace("\n", " ")  # configparser exceptions sometimes include newlines
        logger.critical(f"Invalid configuration, {msg}")
        raise SystemExit(-1) from exc

    # now that we've read the config, configure with the levels defined there (but CLI option takes precedence)
    if "loggers" in config:
        configure_log_levels(options.log_level, config["loggers"])

    try:
        raw_log = config.get("irc", "raw_log", fallback=None)
        configure_raw_log(raw_log)
    except OSError as exc:
        logger.critical(f"Cannot open raw log file: {exc.strerror}", errno=errno.errorcode[exc.errno])
        raise SystemExit(-1) from exc

    try:
        asyncio.run(start_relay(config))
    except KeyboardInterrupt:
        pass
