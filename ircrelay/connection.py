"""IRC network connection component.

This implements a single outbound connection to an IRC network: it dials the
network over TCP or TLS, registers with it, and then reads lines for as long as
the connection lives, relaying every parsed line to the queue shared by all
connections of a ConnectionManager.

Also handles the few parts of the protocol that need an immediate answer
(PING and CTCP VERSION) and provides the operations to send messages to the
network.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import enum
from typing import TYPE_CHECKING, NoReturn

import structlog

from .ircmessage import CTCP_DELIM, IRCMessage

if TYPE_CHECKING:
    from .manager import ConnectionManager

logger = structlog.get_logger()

# IRC over TLS, cf. RFC 7194
TLS_PORT = 6697

# 512 bytes including CRLF per RFC 2812, but allow for servers sending more (e.g. IRCv3 tags)
LINE_LIMIT = 8192 + 512

# how long to wait for the transport to close cleanly
CLOSE_TIMEOUT = 5.0


class IRCConnectionError(Exception):
    """Exception raised when the transport of a connection fails.

    This is scoped to a single connection: dial failures, read errors or write
    errors of one network never affect the connections to other networks.
    """

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(f"{address}: {reason}")
        self.address = address
        self.reason = reason


class State(enum.Enum):
    """Lifecycle of a connection. There is no way back from CLOSED."""

    CONNECTING = "connecting"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


def split_address(address: str) -> tuple[str, int]:
    """Split a network address such as irc.libera.chat:6697 or [::1]:6667 into host and port."""
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Invalid network address, expected host:port: {address}")
    try:
        portnum = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in network address: {address}") from None
    return host.strip("[]"), portnum


def to_unicode(data: bytes) -> str:
    """Decode a line received from the network.

    IRC does not mandate an encoding. Use UTF-8 when the data is valid UTF-8,
    otherwise assume ISO-8859-1 (latin1, and more or less windows-1252) which
    maps every byte to the Unicode code point of the same value, and thus
    never fails.
    """
    try:
        return data.decode("utf8")
    except UnicodeDecodeError:
        return data.decode("latin1")


class Connection:
    """A connection to an IRC network.

    The connection is established with ``connect`` and then serviced by
    ``consume``, typically running in its own task. Sending can happen from
    any task; writes are serialized.
    """

    def __init__(self, manager: ConnectionManager, address: str) -> None:
        self.manager = manager
        self.address = address
        self.host, self.port = split_address(address)

        self.log = logger.bind(network=address)
        self.rawlog = manager.rawlog
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self.state = State.CONNECTING
        self.identified = False
        self._write_lock = asyncio.Lock()

    @property
    def tls(self) -> bool:
        """Return True if the connection is (to be) established over TLS."""
        return self.port == TLS_PORT

    async def connect(self) -> None:
        """Dial the network and register with it, if a nickname has been configured."""
        ssl_context = self.manager.ssl_context if self.tls else None
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port, ssl=ssl_context, limit=LINE_LIMIT),
                self.manager.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            self.state = State.CLOSED
            self.manager.metrics["errors"].labels("connect").inc()
            raise IRCConnectionError(self.address, f"Unable to connect ({str(exc) or 'timeout'})") from exc

        self.state = State.RUNNING
        self.log.info("Connected to IRC network", tls=self.tls)

        try:
            # give slow servers some time to greet us
            await asyncio.sleep(self.manager.connect_delay)

            if self.manager.nick:
                await self.register()
        except BaseException:
            # cancelled or failed to register
            await self.close()
            raise

    async def register(self) -> None:
        """Send the USER/NICK registration commands."""
        nick, realname = self.manager.nick, self.manager.realname
        await self.send_raw(f"USER {nick} localhost localhost :{realname}")
        await self.send_raw(f"NICK {nick}")
        await asyncio.sleep(self.manager.connect_delay)

    async def consume(self) -> None:
        """Read and handle lines from the network, until the connection is closed.

        Returns when the server closes the connection or close() is called.
        Raises IRCConnectionError on a transport error.
        """
        assert self.reader is not None
        # set while skipping the rest of a line that exceeded LINE_LIMIT
        discarding = False
        while self.state is State.RUNNING:
            try:
                # re-armed on every read, so that close() is noticed within one interval
                bline = await asyncio.wait_for(self.reader.readuntil(b"\n"), self.manager.read_timeout)
            except asyncio.TimeoutError:
                exc = self.reader.exception()
                if exc is None:
                    continue
                await self._fail("read", exc)
            except asyncio.IncompleteReadError as exc:
                # end of stream, possibly after an unterminated line
                bline = exc.partial
            except asyncio.LimitOverrunError as exc:
                if not discarding:
                    self.log.debug("Line exceeded max length, ignoring")
                # the overrun data is left in the buffer; drop it, up to the separator if found
                await self.reader.readexactly(exc.consumed)
                discarding = True
                continue
            except OSError as exc:
                if self.state is not State.RUNNING:
                    break
                await self._fail("read", exc)

            if not bline:
                if self.state is State.RUNNING:
                    self.log.info("IRC server closed connection")
                await self.close()
                break

            if discarding:
                # tail of the over-long line
                discarding = False
                continue

            await self._handle_line(bline)

    async def _handle_line(self, bline: bytes) -> None:
        """Handle a single line of input."""
        line = to_unicode(bline).rstrip("\r\n")
        # ignore empty lines
        if not line:
            return

        self.rawlog.info("Data received", network=self.address, direction="<--", message=line)
        self.manager.metrics["lines_received"].labels(self.address).inc()

        try:
            msg = IRCMessage.from_message(line, network=self.address)
        except ValueError:
            self.manager.metrics["errors"].labels("parse").inc()
            self.log.warning("Invalid line", message=line)
            return

        await self._act(msg)
        # blocks this connection (and only this one) while the queue is full
        await self.manager.lines.put(msg)

    async def _act(self, msg: IRCMessage) -> None:
        """React to protocol-level messages, before they are relayed.

        PING is always answered with a PONG. VERSION, usually a CTCP request
        but also accepted bare, is answered with a NOTICE to its sender; a
        VERSION without a source has no one to answer to and is only relayed.
        CTCP replies are NOTICEs, keep their NOTICE command and never get here
        as VERSION.
        """
        if msg.command == "PING":
            token = msg.params[0] if msg.params else self.manager.client_id
            await self.send_raw(str(IRCMessage("PONG", [token])))
        elif msg.command == "VERSION" and msg.user:
            reply = f"{CTCP_DELIM}VERSION {self.manager.version}{CTCP_DELIM}"
            await self.send_raw(str(IRCMessage("NOTICE", [msg.user, reply])))

    async def send_raw(self, msg: str) -> None:
        """Send a line to the network, as-is. The line terminator is appended here."""
        if "\r" in msg or "\n" in msg:
            raise ValueError("IRC messages cannot contain line terminators")
        if self.writer is None or self.state is not State.RUNNING:
            raise IRCConnectionError(self.address, "Not connected")

        self.rawlog.info("Data sent", network=self.address, direction="-->", message=msg)
        async with self._write_lock:
            try:
                self.writer.write(msg.encode("utf8") + b"\r\n")
                await self.writer.drain()
            except OSError as exc:
                await self._fail("write", exc)
        self.manager.metrics["lines_sent"].labels(self.address).inc()

    async def send_message(self, target: str, msg: str) -> None:
        """Send a regular message to a channel or a user."""
        await self.send_raw(f"PRIVMSG {target} :{msg}")

    async def send_action(self, target: str, msg: str) -> None:
        """Send a /me action to a channel or a user."""
        await self.send_raw(f"PRIVMSG {target} :{CTCP_DELIM}ACTION {msg}{CTCP_DELIM}")

    async def identify(self, password: str) -> None:
        """Identify with NickServ. Only done once per connection; NICK must have been sent already."""
        if self.identified:
            return
        self.log.info("Identifying with NickServ")
        await self.send_message("NickServ", f"identify {password}")
        self.identified = True

    async def run_command(self, content: str) -> None:
        """Run a slash command, e.g. "/join #channel".

        The command is sent verbatim, apart from "/msg" being an alias for
        "/privmsg". There is no validation whatsoever: never pass untrusted
        input to this.
        """
        if content.startswith("/"):
            content = content[1:]
        cmd, sep, rest = content.partition(" ")
        if not cmd:
            raise ValueError("No command given")
        if cmd.lower() == "msg":
            content = "privmsg" + sep + rest
        await self.send_raw(content)

    async def close(self, reason: str | None = None) -> None:
        """Close the connection, sending a QUIT with the given reason first, if any."""
        if self.state in (State.CLOSING, State.CLOSED):
            return

        if reason is not None and self.state is State.RUNNING:
            try:
                await self.send_raw(str(IRCMessage("QUIT", [reason])))
            except IRCConnectionError:
                self.log.debug("Unable to send QUIT")
            if self.state is State.CLOSED:
                return

        self.state = State.CLOSING
        if self.writer is not None:
            self.writer.close()
            try:
                await asyncio.wait_for(self.writer.wait_closed(), CLOSE_TIMEOUT)
            except (OSError, asyncio.TimeoutError) as exc:
                self.log.debug("Unclean close", error=str(exc))
        self.state = State.CLOSED
        self.log.info("Connection closed")

    async def _fail(self, kind: str, exc: BaseException) -> NoReturn:
        """Close the connection after a transport error, and raise it as an IRCConnectionError."""
        self.manager.metrics["errors"].labels(kind).inc()
        self.log.error(f"Connection {kind} error", error=str(exc))
        await self.close()
        raise IRCConnectionError(self.address, f"{kind.capitalize()} error ({exc})") from exc

    def __repr__(self) -> str:
        """Return a user-readable description of the connection."""
        return f"<{self.__class__.__name__} {self.address} {self.state.value}>"
