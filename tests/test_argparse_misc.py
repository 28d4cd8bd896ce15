"""Argument parse, logging configuration and entry point tests."""

from __future__ import annotations

import configparser
import json
import logging
import pathlib
from unittest.mock import ANY, patch

import pytest
import structlog

import ircrelay.main
from ircrelay import IRCConnectionError
from ircrelay.manager import ConnectionManager
from ircrelay.prometheus import PrometheusServer


def parse_caplog(caplog: pytest.LogCaptureFixture) -> tuple[list[str], list[str]]:
    """Parse pytest's caplog, returning a list of logs pre-format and post-format.

    The formatted logs are formatted using our custom (structlog) formatter.
    """
    root_formatter = logging.getLogger().handlers[-1].formatter
    assert type(root_formatter) is structlog.stdlib.ProcessorFormatter

    capevents, caplogs = [], []
    for rec in caplog.records:
        assert isinstance(rec.msg, dict)
        assert "event" in rec.msg
        capevents.append(rec.msg["event"])
        caplogs.append(root_formatter.format(rec))

    return (capevents, caplogs)


def test_parse_args_help(capsys: pytest.CaptureFixture[str]) -> None:
    """Test whether --help returns usage and exits."""
    with pytest.raises(SystemExit) as exc:
        ircrelay.main.parse_args(["--help"])

    exit_status = int(exc.value.code) if exc.value.code is not None else 0
    assert exit_status == 0
    out, _ = capsys.readouterr()
    assert "usage: ircrelay" in out


def test_parse_args_defaults() -> None:
    """Test the default values of the command line arguments."""
    options = ircrelay.main.parse_args(["--log-level", "debug"])
    assert options.log_level == "DEBUG"
    assert options.config_file.name == "ircrelay.conf"


@pytest.mark.parametrize("log_format", ["plain", "console"])
def test_configure_logging(caplog: pytest.LogCaptureFixture, log_format: str) -> None:
    """Test that the plain and console logging configurations work."""
    ircrelay.main.configure_logging(log_format)
    log = structlog.get_logger("testlogger")
    caplog.clear()
    log.warning("this is a test log")

    capevents, caplogs = parse_caplog(caplog)
    assert ["this is a test log"] == capevents
    assert all("this is a test log" in c for c in caplogs)


def test_configure_logging_json(caplog: pytest.LogCaptureFixture) -> None:
    """Test that the json logging configuration works."""
    ircrelay.main.configure_logging("json")
    log = structlog.get_logger("testlogger")
    caplog.clear()
    log.warning("this is a json log", key="value")

    root_formatter = logging.getLogger().handlers[-1].formatter
    assert type(root_formatter) is structlog.stdlib.ProcessorFormatter
    parsed_logs = [json.loads(root_formatter.format(rec)) for rec in caplog.records]
    assert ["this is a json log"] == [rec["event"] for rec in parsed_logs]
    assert ["value"] == [rec["key"] for rec in parsed_logs]


def test_configure_logging_invalid() -> None:
    """Test that an invalid logging configuration does not work."""
    with pytest.raises(ValueError, match="Invalid logging format"):
        ircrelay.main.configure_logging("invalid")


def test_configure_log_levels() -> None:
    """Test that log levels are set from the config, and that the override applies to the package."""
    config = configparser.ConfigParser()
    config.read_string(
        """
        [loggers]
        ircrelay.connection = DEBUG
        """
    )
    ircrelay.main.configure_log_levels("WARNING", config["loggers"])
    assert logging.getLogger("ircrelay.connection").level == logging.DEBUG
    assert logging.getLogger("ircrelay").level == logging.WARNING


def test_configure_raw_log(tmp_path: pathlib.Path) -> None:
    """Test that raw traffic ends up in its own file, timestamped and tagged."""
    ircrelay.main.configure_logging("plain")
    raw_log = tmp_path / "server_raw.log"
    ircrelay.main.configure_raw_log(str(raw_log))

    rawlog = structlog.get_logger("ircrelay.raw")
    rawlog.info("Data sent", network="irc.example.org:6667", direction="-->", message="NICK relaybot")
    for handler in logging.getLogger("ircrelay.raw").handlers:
        handler.flush()

    contents = raw_log.read_text(encoding="utf-8")
    assert "network='irc.example.org:6667'" in contents
    assert "direction='-->'" in contents
    assert "message='NICK relaybot'" in contents
    assert "timestamp=" in contents

    # back to discarding raw traffic
    ircrelay.main.configure_raw_log(None)
    assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger("ircrelay.raw").handlers)


def test_main(tmp_path: pathlib.Path) -> None:
    """Test the main/entry point function."""
    tmp_config = tmp_path / "ircrelay-regular.conf"
    tmp_config.write_text(
        """
        [irc]
        nick = relaybot

        [network:irc.example.org:6697]
        password = secret
        channels = #one,#two
        """
    )
    args = ("--config", str(tmp_config))

    # regular start; ensure that the networks are connected to and the lines consumed
    with patch.object(ConnectionManager, "connect", autospec=True) as mocked_connect, patch.object(
        ConnectionManager, "identify", autospec=True
    ) as mocked_identify, patch.object(ConnectionManager, "run_command", autospec=True) as mocked_run_command:
        with patch.object(ircrelay.main, "relay_lines", autospec=True) as mocked_relay_lines:
            ircrelay.run(args)
            mocked_connect.assert_awaited_once_with(ANY, "irc.example.org:6697")
            mocked_identify.assert_awaited_once_with(ANY, "irc.example.org:6697", "secret")
            mocked_run_command.assert_awaited_once_with(ANY, "irc.example.org:6697", "/join #one,#two")
            mocked_relay_lines.assert_awaited()

    # ensure the Ctrl+C handler works and does not raise any exceptions; the
    # network is never added, so identify fails and is logged
    with patch.object(ConnectionManager, "connect", autospec=True):
        with patch.object(ircrelay.main, "relay_lines", side_effect=KeyboardInterrupt):
            ircrelay.run(args)  # does not raise an exception


def test_main_unreachable_network(tmp_path: pathlib.Path, caplog: pytest.LogCaptureFixture) -> None:
    """Test that an unreachable network does not prevent the others from being connected to."""
    tmp_config = tmp_path / "ircrelay-unreachable.conf"
    tmp_config.write_text(
        """
        [irc]
        [network:irc.example.org:6667]
        password = secret
        [network:irc.example.net:6667]
        """
    )
    args = ("--config", str(tmp_config))

    def fake_connect(_: ConnectionManager, address: str) -> None:
        if address == "irc.example.org:6667":
            raise IRCConnectionError(address, "Unable to connect (Connection refused)")

    with patch.object(ConnectionManager, "connect", autospec=True, side_effect=fake_connect) as mocked_connect:
        with patch.object(ConnectionManager, "identify", autospec=True) as mocked_identify:
            with patch.object(ircrelay.main, "relay_lines", autospec=True):
                caplog.clear()
                ircrelay.run(args)
                assert mocked_connect.await_count == 2
                mocked_identify.assert_not_awaited()

    assert any("Unable to set up IRC network" in rec.message for rec in caplog.records)


def test_main_oserror(tmp_path: pathlib.Path, caplog: pytest.LogCaptureFixture) -> None:
    """Test that OS errors (e.g. if the metrics port is bound already) are handled."""
    tmp_config = tmp_path / "ircrelay-prometheus.conf"
    tmp_config.write_text(
        """
        [irc]
        [prometheus]
        """
    )
    args = ("--config", str(tmp_config))

    with patch.object(PrometheusServer, "__init__", side_effect=OSError(98, "Address already in use")):
        caplog.clear()
        with pytest.raises(SystemExit) as exc:
            ircrelay.run(args)

    exit_status = int(exc.value.code) if exc.value.code is not None else 0
    assert exit_status < 0
    assert "Address already in use" in caplog.records[-1].message


def test_main_config_nonexistent(caplog: pytest.LogCaptureFixture) -> None:
    """Test with non-existing configuration."""
    args = ("--config", "/nonexistent")

    caplog.clear()
    with pytest.raises(SystemExit) as exc:
        ircrelay.run(args)

    exit_status = int(exc.value.code) if exc.value.code is not None else 0
    assert exit_status < 0
    assert "No such file or directory" in caplog.records[-1].message


@pytest.mark.parametrize("test_config", ["[prometheus]\n[network:irc.example.org:6667]\n", "invalid config"])
def test_main_config_invalid(
    tmp_path: pathlib.Path,
    caplog: pytest.LogCaptureFixture,
    test_config: str,
) -> None:
    """Test the main/entry point function (without an IRC config)."""
    tmp_config = tmp_path / "ircrelay-invalid.conf"
    tmp_config.write_text(test_config)
    args = ("--config", str(tmp_config))

    caplog.clear()
    with pytest.raises(SystemExit) as exc:
        ircrelay.run(args)

    exit_status = int(exc.value.code) if exc.value.code is not None else 0
    assert exit_status < 0
    assert "Invalid configuration" in caplog.records[-1].message
