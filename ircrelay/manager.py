"""Connection manager component.

Keeps track of the connections to all IRC networks, keyed by their address,
and routes operations to the right connection. All connections relay the
lines they receive to the same queue, which is consumed downstream.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import configparser
import functools
import ssl
from typing import Any

import prometheus_client
import structlog
from prometheus_client import Counter, Gauge

from ._version import __version__
from .connection import Connection, IRCConnectionError, State
from .ircmessage import IRCMessage

logger = structlog.get_logger()


class UnknownNetworkError(LookupError):
    """Exception raised when an operation refers to a network we are not connected to."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Not connected to network {address}")
        self.address = address


class ConnectionManager:
    """Manages the connections to IRC networks."""

    def __init__(
        self,
        config: configparser.SectionProxy,
        lines: asyncio.Queue[IRCMessage],
        rawlog: Any = None,
    ) -> None:
        self.nick = config.get("nick", fallback=None)
        self.realname = config.get("realname", fallback=self.nick)
        self.version = config.get("version", fallback=f"ircrelay {__version__}")
        self.client_id = config.get("client_id", fallback="ircrelay")
        self.connect_delay = config.getfloat("connect_delay", fallback=1.0)
        self.connect_timeout = config.getfloat("connect_timeout", fallback=30.0)
        self.read_timeout = config.getfloat("read_timeout", fallback=1.0)

        self.ssl_context = ssl.create_default_context()
        if not config.getboolean("tls_verify", fallback=True):
            self.ssl_context.check_hostname = False
            self.ssl_context.verify_mode = ssl.CERT_NONE

        self.lines = lines
        self.rawlog = rawlog if rawlog is not None else structlog.get_logger("ircrelay.raw")
        self._connections: dict[str, Connection] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._dials: dict[str, asyncio.Task[Connection]] = {}
        self._lock = asyncio.Lock()

        # set up a few Prometheus metrics
        registry = prometheus_client.CollectorRegistry()
        self.metrics: dict[str, Any[Gauge, Counter]] = {
            "connections": Gauge("ircrelay_connections", "Number of connected IRC networks", registry=registry),
            "lines_received": Counter(
                "ircrelay_lines_received", "Count of lines received", ["network"], registry=registry
            ),
            "lines_sent": Counter("ircrelay_lines_sent", "Count of lines sent", ["network"], registry=registry),
            "errors": Counter("ircrelay_errors", "Count of errors and exceptions", ["type"], registry=registry),
        }
        self.metrics["connections"].set_function(lambda: len(self._connections))
        self.metrics_registry = registry

    async def connect(self, address: str) -> Connection:
        """Connect to a network, unless already connected. Returns the connection.

        Raises IRCConnectionError if the network cannot be reached.

        Concurrent calls for the same address share a single dial, which is
        not aborted when one of the callers is cancelled. Dials to different
        networks proceed in parallel.
        """
        async with self._lock:
            connection = self._connections.get(address)
            # a closed connection may linger until its read task has ended
            if connection is not None and connection.state is State.RUNNING:
                return connection

            dial = self._dials.get(address)
            if dial is None:
                dial = asyncio.create_task(self._dial(Connection(self, address)), name=f"connect {address}")
                self._dials[address] = dial
        return await asyncio.shield(dial)

    async def _dial(self, connection: Connection) -> Connection:
        """Establish a new connection, and start its read loop."""
        address = connection.address
        try:
            await connection.connect()
            async with self._lock:
                self._connections[address] = connection
                task = asyncio.create_task(connection.consume(), name=f"consume {address}")
                self._tasks[address] = task
                task.add_done_callback(functools.partial(self._connection_done, address))
        except BaseException:
            await connection.close()
            raise
        finally:
            if self._dials.get(address) is asyncio.current_task():
                del self._dials[address]
        return connection

    def _connection_done(self, address: str, task: asyncio.Task[None]) -> None:
        """Forget about a connection whose read loop has ended."""
        if self._tasks.get(address) is task:
            del self._tasks[address]
            del self._connections[address]

        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, IRCConnectionError):
            logger.error("Connection to IRC network lost", network=address, error=exc.reason)
        elif exc is not None:
            logger.error("Unexpected error in connection", network=address, exc_info=exc)
        else:
            logger.info("Connection to IRC network ended", network=address)

    def get(self, address: str) -> Connection:
        """Return the connection to a network, or raise UnknownNetworkError."""
        try:
            return self._connections[address]
        except KeyError:
            raise UnknownNetworkError(address) from None

    def __contains__(self, address: object) -> bool:
        """Return True if there is a connection to the given network address."""
        return address in self._connections

    @property
    def networks(self) -> list[str]:
        """Return the addresses of all the networks we are connected to."""
        return list(self._connections)

    async def identify(self, address: str, password: str) -> None:
        """Identify with NickServ on the given network."""
        await self.get(address).identify(password)

    async def send_message(self, address: str, target: str, msg: str) -> None:
        """Send a message to a channel or user on the given network."""
        await self.get(address).send_message(target, msg)

    async def send_action(self, address: str, target: str, msg: str) -> None:
        """Send an action (/me) to a channel or user on the given network."""
        await self.get(address).send_action(target, msg)

    async def run_command(self, address: str, content: str) -> None:
        """Run a slash command on the given network."""
        await self.get(address).run_command(content)

    async def send_raw(self, address: str, msg: str) -> None:
        """Send a raw line to the given network."""
        await self.get(address).send_raw(msg)

    async def shutdown(self, reason: str | None = None) -> None:
        """Close all connections, aborting those still being established. Safe to call more than once."""
        async with self._lock:
            dials = list(self._dials.values())
            self._dials.clear()
            for dial in dials:
                dial.cancel()
            await asyncio.gather(*dials, return_exceptions=True)

            connections = list(self._connections.values())
            tasks = list(self._tasks.values())
            self._connections.clear()
            self._tasks.clear()

            if connections:
                logger.info("Closing connections", count=len(connections))
            for connection in connections:
                await connection.close(reason)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
