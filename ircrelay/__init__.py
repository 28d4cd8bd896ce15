"""IRCRelay — outbound IRC connections for an IRC gateway.

IRCRelay maintains connections to any number of IRC networks, over plain TCP
or TLS, keeps them registered and alive, and relays every line received from
them to a single queue, to be consumed by the rest of the gateway (e.g. to fan
them out to attached clients). Messages, actions and commands can be sent to
any of the networks, identified by their address.
"""

# Copyright © Faidon Liambotis
# Copyright © Wikimedia Foundation, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY CODE, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from ._version import __version__
from .connection import Connection, IRCConnectionError, State, to_unicode
from .ircmessage import IRCMessage
from .main import run
from .manager import ConnectionManager, UnknownNetworkError

__all__ = [
    "__version__",
    "Connection",
    "ConnectionManager",
    "IRCConnectionError",
    "IRCMessage",
    "State",
    "UnknownNetworkError",
    "run",
    "to_unicode",
]
