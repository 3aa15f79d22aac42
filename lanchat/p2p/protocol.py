"""Wire formats for discovery announcements and private messages.

Announcement (UDP broadcast)
----------------------------
A single UTF-8 text line::

    IP: 192.168.1.11, Name: Alice Smith

The nickname is everything after ``Name: `` up to the end of the payload
(a trailing newline is tolerated) and is never escaped.  Payloads of any
other shape are decode failures.

Private message (TCP)
---------------------
One connection carries exactly one message: the raw UTF-8 bytes, no length
prefix and no terminator.  The receiver does a single read of up to
``MAX_MESSAGE_BYTES`` and the connection is then closed by both sides.
"""

from __future__ import annotations

import asyncio
import ipaddress
import re
from dataclasses import dataclass
from typing import Any

from lanchat.errors import AnnouncementError

DISCOVERY_PORT = 8888
MESSAGE_PORT = 1234
MAX_DATAGRAM_BYTES = 1024
MAX_MESSAGE_BYTES = 1024

_ANNOUNCEMENT_RE = re.compile(r"IP: (\d+\.\d+\.\d+\.\d+), Name: (.+)")


@dataclass(frozen=True)
class Announcement:
    """One node advertising its address and nickname."""

    ip: str
    nickname: str

    # -- serialisation -------------------------------------------------------

    def encode(self) -> bytes:
        return f"IP: {self.ip}, Name: {self.nickname}".encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> "Announcement":
        """Parse a datagram payload.

        Raises ``AnnouncementError`` for anything that is not exactly
        ``IP: <dotted-quad>, Name: <nickname>``.
        """
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AnnouncementError(f"not UTF-8: {exc}") from None

        match = _ANNOUNCEMENT_RE.fullmatch(text.rstrip("\r\n"))
        if match is None:
            raise AnnouncementError(f"unrecognised announcement: {text[:64]!r}")

        ip, nickname = match.groups()
        try:
            ipaddress.IPv4Address(ip)
        except ipaddress.AddressValueError:
            raise AnnouncementError(f"invalid IPv4 address: {ip!r}") from None
        return cls(ip=ip, nickname=nickname)

    @classmethod
    def try_decode(cls, data: bytes) -> "Announcement | None":
        """Like :meth:`decode` but returns *None* on malformed input."""
        try:
            return cls.decode(data)
        except AnnouncementError:
            return None


# ---------------------------------------------------------------------------
# Private message stream helpers
# ---------------------------------------------------------------------------

def encode_message(text: str) -> bytes:
    return text.encode("utf-8")


def decode_message(data: bytes) -> str:
    """Decode a received message body, replacing undecodable bytes."""
    return data.decode("utf-8", errors="replace")


async def read_message(
    reader: asyncio.StreamReader,
    max_bytes: int = MAX_MESSAGE_BYTES,
    timeout: float | None = None,
) -> str | None:
    """Read one message from an ``asyncio.StreamReader`` with a single read.

    Returns *None* when the peer closed the connection without sending
    anything.  Connection errors and timeouts propagate to the caller.
    """
    if timeout:
        data = await asyncio.wait_for(reader.read(max_bytes), timeout=timeout)
    else:
        data = await reader.read(max_bytes)
    if not data:
        return None
    return decode_message(data)


def write_message(writer: Any, text: str) -> None:
    """Write one message body to an ``asyncio.StreamWriter``."""
    writer.write(encode_message(text))
