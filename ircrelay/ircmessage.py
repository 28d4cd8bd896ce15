"""IRC message component.

Parses lines received from IRC networks into structured messages, and formats
structured messages back into their wire protocol representation.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
from collections.abc import Sequence

CTCP_DELIM = "\x01"


@dataclasses.dataclass
class IRCMessage:
    """Represents an RFC 1459/2812 message.

    Can be either initialized:
    * with its constructor using a command, params and (optionally) a source
    * given a preformatted string, using the from_message() class method

    CTCP requests (PRIVMSGs framed in \\x01) are unwrapped, so that e.g. a
    "PRIVMSG nick :\\x01VERSION\\x01" is represented with a "VERSION" command
    and the ctcp flag set. CTCP replies (NOTICEs) are left alone.

    Does not currently support IRCv3 features like message tags.
    """

    # Based on the RFC1459Message class from the mammon-ircd and goshuirc projects
    __copyright__ = "Copyright © 2014 William Pitcock <nenolod@dereferenced.org>"
    __license__ = """
    SPDX-License-Identifier: ISC

    Permission to use, copy, modify, and/or distribute this software for any
    purpose with or without fee is hereby granted, provided that the above
    copyright notice and this permission notice appear in all copies.

    THE SOFTWARE IS PROVIDED "AS IS" AND THE AUTHOR DISCLAIMS ALL WARRANTIES
    WITH REGARD TO THIS SOFTWARE INCLUDING ALL IMPLIED WARRANTIES OF
    MERCHANTABILITY AND FITNESS. IN NO EVENT SHALL THE AUTHOR BE LIABLE FOR
    ANY SPECIAL, DIRECT, INDIRECT, OR CONSEQUENTIAL DAMAGES OR ANY DAMAGES
    WHATSOEVER RESULTING FROM LOSS OF USE, DATA OR PROFITS, WHETHER IN AN
    ACTION OF CONTRACT, NEGLIGENCE OR OTHER TORTIOUS ACTION, ARISING OUT OF
    OR IN CONNECTION WITH THE USE OR PERFORMANCE OF THIS SOFTWARE.
    """

    command: str
    params: Sequence[str]
    source: str | None = None
    ctcp: bool = False
    # address of the network the message was received from, if any
    network: str | None = dataclasses.field(default=None, compare=False)

    @classmethod
    def from_message(cls, message: str, network: str | None = None) -> IRCMessage:
        """Parse a previously formatted IRC message. Returns an instance of IRCMessage."""
        parts = message.split(" ")

        source = None
        if parts[0].startswith(":"):
            source = parts[0][1:]
            parts = parts[1:]

        try:
            command = parts[0].upper()
        except IndexError:
            raise ValueError("Invalid IRC message (no command specified)") from None
        if not command:
            raise ValueError("Invalid IRC message (empty command)")

        original_params = parts[1:]
        params = []

        while original_params:
            # skip multiple spaces in middle of message, as per RFC 1459
            if not original_params[0] and len(original_params) > 1:
                original_params.pop(0)
                continue
            elif original_params[0].startswith(":"):
                arg = " ".join(original_params)[1:]
                params.append(arg)
                break
            elif original_params[0]:
                params.append(original_params.pop(0))
            else:
                original_params.pop(0)

        if command == "PRIVMSG" and len(params) == 2 and params[1].startswith(CTCP_DELIM):
            # the closing delimiter is optional, cf. the CTCP draft
            body = params[1][1:]
            if body.endswith(CTCP_DELIM):
                body = body[:-1]
            verb, _, arg = body.partition(" ")
            if verb:
                ctcp_params = [params[0], arg] if arg else [params[0]]
                return cls(verb.upper(), ctcp_params, source, ctcp=True, network=network)

        return cls(command, params, source, network=network)

    @property
    def user(self) -> str:
        """Return the nickname part of the source, e.g. "nick" for "nick!user@host"."""
        if not self.source:
            return ""
        return self.source.split("!", 1)[0]

    def __str__(self) -> str:
        """Generate an RFC-compliant formatted string for the instance."""
        components = []

        if self.source:
            components.append(":" + self.source)

        command, params = self.command, list(self.params)
        if self.ctcp:
            body = " ".join([command, *params[1:]])
            command, params = "PRIVMSG", [*params[:1], CTCP_DELIM + body + CTCP_DELIM]

        components.append(command)

        if params:
            base = []
            for arg in params:
                casted = str(arg)
                if casted and " " not in casted and casted[0] != ":":
                    base.append(casted)
                else:
                    base.append(":" + casted)
                    break

            components.append(" ".join(base))

        return " ".join(components)
