"""TCP transport for private messages.

Each node runs a TCP server on the message port.  To send, the sender looks
the nickname up in the peer directory, opens a short-lived connection to that
address, writes the text once and closes.  The receiver does a single read,
records the message in its inbox and closes.  Nothing is acknowledged.

A failure on one connection only affects that connection: the server keeps
accepting and the sender reports ``False`` to its caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from loguru import logger

from lanchat.errors import StartupError
from lanchat.p2p.directory import InboxEntry, NodeState
from lanchat.p2p.protocol import MAX_MESSAGE_BYTES, MESSAGE_PORT, encode_message, read_message, write_message

MessageCallback = Callable[[InboxEntry], None]


class MessageServer:
    """Accepts inbound connections and appends one message per connection.

    Parameters
    ----------
    state:
        Shared node state; the sender's nickname is resolved from its peer
        directory when the message arrives.
    host:
        Interface to bind (default ``"0.0.0.0"``).
    port:
        TCP message port (default 1234).
    max_bytes:
        Size of the single read (default 1024).
    read_timeout:
        Seconds to wait for the body.  ``0`` waits forever, so a silent peer
        only ever ties up its own handler.
    """

    def __init__(
        self,
        state: NodeState,
        host: str = "0.0.0.0",
        port: int = MESSAGE_PORT,
        max_bytes: int = MAX_MESSAGE_BYTES,
        read_timeout: float = 0.0,
    ):
        self.state = state
        self.host = host
        self.port = port
        self.max_bytes = max_bytes
        self.read_timeout = read_timeout
        self._server: asyncio.Server | None = None
        self._callbacks: list[MessageCallback] = []

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback invoked after each message is stored."""
        self._callbacks.append(callback)

    @property
    def bound_port(self) -> int:
        if self._server is None or not self._server.sockets:
            return 0
        return self._server.sockets[0].getsockname()[1]

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self.port,
            )
        except OSError as exc:
            raise StartupError(f"cannot bind message port TCP {self.port}: {exc}") from exc
        logger.info("[Chat/Transport] listening on {}:{}", self.host, self.bound_port)

    async def stop(self) -> None:
        if self._server:
            # Not awaiting wait_closed: a handler blocked on a silent peer never returns.
            self._server.close()
            self._server = None
        logger.info("[Chat/Transport] stopped")

    # -- receiving -----------------------------------------------------------

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one inbound connection (one message per connection)."""
        peername = writer.get_extra_info("peername")
        sender_ip = peername[0] if peername else ""
        try:
            content = await read_message(
                reader, self.max_bytes, timeout=self.read_timeout or None,
            )
            if content is None:
                logger.debug("[Chat/Transport] {} closed without sending", sender_ip)
                return
            entry = self.state.record_message(content, sender_ip)
            logger.debug(
                "[Chat/Transport] message from {} ({!r}), {} bytes",
                sender_ip, entry.sender_nickname, len(content),
            )
            for cb in self._callbacks:
                try:
                    cb(entry)
                except Exception as exc:
                    logger.error("[Chat/Transport] message callback error: {}", exc)
        except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("[Chat/Transport] dropped connection from {}: {}", sender_ip, exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SendTarget:
    """A nickname resolved to an address, with its liveness at lookup time."""

    nickname: str
    ip: str
    stale: bool = False


class SendStatus(str, Enum):
    SENT = "sent"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    target: SendTarget | None = None

    @property
    def ok(self) -> bool:
        return self.status is SendStatus.SENT


class MessageSender:
    """Delivers private messages to peers by nickname.

    Parameters
    ----------
    state:
        Shared node state used for nickname resolution.
    port:
        Remote TCP message port (default 1234).
    stale_after:
        Seconds of silence after which a target is flagged stale (default 60).
        Staleness is advisory; the message is sent regardless.
    max_bytes:
        Receiver read size; longer messages are sent but logged as truncated.
    connect_timeout:
        Seconds allowed for the TCP handshake.
    """

    def __init__(
        self,
        state: NodeState,
        port: int = MESSAGE_PORT,
        stale_after: float = 60.0,
        max_bytes: int = MAX_MESSAGE_BYTES,
        connect_timeout: float = 5.0,
    ):
        self.state = state
        self.port = port
        self.stale_after = stale_after
        self.max_bytes = max_bytes
        self.connect_timeout = connect_timeout

    def resolve(self, nickname: str) -> SendTarget | None:
        """Look *nickname* up in the peer directory; *None* if unknown."""
        ip = self.state.peers.lookup_by_nickname(nickname)
        if ip is None:
            return None
        stale = self.state.peers.is_stale(ip, self.stale_after)
        return SendTarget(nickname=nickname, ip=ip, stale=stale)

    async def send(self, target: SendTarget, text: str) -> bool:
        """Open a connection to *target*, write *text* once, close.

        Returns ``True`` once the bytes are handed to the network; there is
        no acknowledgment, so this says nothing about delivery.
        """
        try:
            payload = encode_message(text)
        except UnicodeEncodeError as exc:
            logger.warning("[Chat/Transport] message to {} is not valid text: {}", target.nickname, exc)
            return False
        size = len(payload)
        if size > self.max_bytes:
            logger.warning(
                "[Chat/Transport] message to {} is {} bytes; the receiver reads only {}",
                target.nickname, size, self.max_bytes,
            )
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(target.ip, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "[Chat/Transport] failed to connect to {} @ {}:{}: {}",
                target.nickname, target.ip, self.port, exc,
            )
            return False
        try:
            write_message(writer, text)
            await writer.drain()
            return True
        except (ConnectionError, OSError) as exc:
            logger.warning("[Chat/Transport] failed to send to {}: {}", target.nickname, exc)
            return False
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def send_to(self, nickname: str, text: str) -> SendResult:
        """Resolve *nickname* and send *text*; no network I/O if unknown."""
        target = self.resolve(nickname)
        if target is None:
            logger.info("[Chat/Transport] peer {!r} not found", nickname)
            return SendResult(SendStatus.NOT_FOUND)
        if target.stale:
            logger.warning(
                "[Chat/Transport] {} has not announced for over {:.0f}s, sending anyway",
                nickname, self.stale_after,
            )
        ok = await self.send(target, text)
        return SendResult(SendStatus.SENT if ok else SendStatus.FAILED, target)
