"""Prometheus instrumentation component.

Exposes the metrics of a ConnectionManager (connected networks, lines received
and sent per network, errors per type) on a Prometheus/OpenMetrics-compatible
/metrics endpoint.

The HTTP server is not threaded: its listening socket is handed to the asyncio
event loop, which serves one request at a time whenever the socket becomes
readable. Scrapes are cheap, so this is plenty.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import configparser
import http.server
import socket

import prometheus_client
import structlog


class PrometheusServer(http.server.HTTPServer):
    """An HTTP server exposing a metrics registry."""

    log = structlog.get_logger("ircrelay.prometheus")
    allow_reuse_address = True

    def __init__(self, config: configparser.SectionProxy, registry: prometheus_client.CollectorRegistry) -> None:
        listen_address = config.get("listen_address", fallback="::")
        if ":" in listen_address:
            self.address_family = socket.AF_INET6
        listen_port = config.getint("listen_port", fallback=9200)
        super().__init__((listen_address, listen_port), prometheus_client.MetricsHandler.factory(registry))
        self.address, self.port = str(self.server_address[0]), self.server_address[1]
        self._loop: asyncio.AbstractEventLoop | None = None

    def server_bind(self) -> None:
        """Bind to both IPv4 and IPv6 when given an IPv6 address."""
        if self.address_family == socket.AF_INET6:
            self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        super().server_bind()

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Serve requests from the given event loop."""
        self.socket.setblocking(False)
        loop.add_reader(self.socket, self.handle_request)
        self._loop = loop
        self.log.info("Listening for Prometheus HTTP", listen_address=self.address, listen_port=self.port)

    def detach(self) -> None:
        """Stop serving requests and close the listening socket."""
        if self._loop is not None:
            self._loop.remove_reader(self.socket)
            self._loop = None
        self.server_close()
