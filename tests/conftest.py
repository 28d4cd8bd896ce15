"""Testing initialization."""

from __future__ import annotations

import asyncio
import configparser
import logging
from collections.abc import AsyncGenerator, Generator

import pytest
import structlog

from ircrelay import ConnectionManager, IRCMessage

from .ircnetwork import FakeIRCNetwork, Peer


@pytest.fixture(autouse=True)
def fixture_configure_structlog() -> None:
    """Fixture to configure structlog. Currently just silences it entirely."""

    def dummy_processor(
        logger: logging.Logger, name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        raise structlog.exceptions.DropEvent

    structlog.configure(processors=[dummy_processor])


@pytest.fixture(name="config")
def fixture_config() -> Generator[configparser.ConfigParser, None, None]:
    """Fixture representing an example configuration."""
    config = configparser.ConfigParser()
    config.read_string(
        """
        [irc]
        nick = relaybot
        realname = Relay Bot
        version = ircrelay-test 1.0
        # no need to wait for servers in tests
        connect_delay = 0
        connect_timeout = 2
        # short reads, so that tests notice closes quickly
        read_timeout = 0.05

        [prometheus]
        listen_address = 127.0.0.1
        # pick a random free port
        listen_port = 0
        """
    )
    yield config


@pytest.fixture(name="ircnetwork")
async def fixture_ircnetwork() -> AsyncGenerator[FakeIRCNetwork, None]:
    """Fixture for a running FakeIRCNetwork."""
    network = FakeIRCNetwork()
    await network.start()
    yield network
    await network.stop()


@pytest.fixture(name="rawlog")
def fixture_rawlog() -> structlog.testing.CapturingLogger:
    """Fixture capturing everything sent to the raw traffic log."""
    return structlog.testing.CapturingLogger()


@pytest.fixture(name="lines")
async def fixture_lines() -> asyncio.Queue[IRCMessage]:
    """Fixture for the queue connections relay their lines to."""
    return asyncio.Queue(maxsize=10)


@pytest.fixture(name="manager")
async def fixture_manager(
    config: configparser.ConfigParser,
    lines: asyncio.Queue[IRCMessage],
    rawlog: structlog.testing.CapturingLogger,
) -> AsyncGenerator[ConnectionManager, None]:
    """Fixture for a ConnectionManager, shut down after the test."""
    manager = ConnectionManager(config["irc"], lines, rawlog=rawlog)
    yield manager
    await manager.shutdown()


@pytest.fixture(name="peer")
async def fixture_peer(manager: ConnectionManager, ircnetwork: FakeIRCNetwork) -> Peer:
    """Fixture for a client connected to the fake network, past its registration."""
    await manager.connect(ircnetwork.address)
    peer = await ircnetwork.accept()
    await peer.readline()  # USER
    await peer.readline()  # NICK
    return peer
