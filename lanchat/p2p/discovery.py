"""UDP broadcast discovery for LAN chat peers.

How it works
------------
1. On start the node works out which local address it uses to reach the
   outside world (``get_outbound_ip``) and keeps it as its identity.
2. ``DiscoveryBroadcaster`` sends ``IP: <ip>, Name: <nickname>`` to the
   broadcast address on the discovery port every ``interval`` seconds
   (default 10).
3. ``DiscoveryListener`` binds the discovery port, decodes every datagram and
   upserts the peer directory.  A peer seen for the first time fires the
   ``on_peer_discovered`` callbacks, except when the announcement is our own.

A failed send or receive is logged and the loop carries on with the next
datagram; only failing to bind the listening port stops the node.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Callable

from loguru import logger

from lanchat.errors import StartupError
from lanchat.p2p.directory import NodeState, PeerInfo
from lanchat.p2p.protocol import DISCOVERY_PORT, MAX_DATAGRAM_BYTES, Announcement
from lanchat.p2p.resilience import supervised_task

PeerCallback = Callable[[PeerInfo], None]

FALLBACK_IP = "127.0.0.1"


def get_outbound_ip(probe_host: str = "8.8.8.8", probe_port: int = 80) -> str:
    """Return the local IPv4 address used to reach *probe_host*.

    Connecting a UDP socket only asks the kernel for a route; no packet is
    sent.  Falls back to ``127.0.0.1`` when the host has no route at all.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((probe_host, probe_port))
        return sock.getsockname()[0]
    except OSError as exc:
        logger.warning(
            "[Chat/Discovery] cannot determine outbound address ({}), using {}",
            exc, FALLBACK_IP,
        )
        return FALLBACK_IP
    finally:
        sock.close()


class DiscoveryBroadcaster:
    """Periodically announces this node on the LAN.

    Parameters
    ----------
    state:
        Shared node state; ``state.identity`` must be set before ``start``.
    port:
        UDP discovery port the announcements are sent to (default 8888).
    broadcast_address:
        Destination address (default ``255.255.255.255``).
    interval:
        Seconds between announcements (default 10).
    """

    def __init__(
        self,
        state: NodeState,
        port: int = DISCOVERY_PORT,
        broadcast_address: str = "255.255.255.255",
        interval: float = 10.0,
    ):
        self.state = state
        self.port = port
        self.broadcast_address = broadcast_address
        self.interval = interval
        self._running = False
        self._sock: socket.socket | None = None
        self._task: asyncio.Task | None = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self.state.identity is None:
            raise RuntimeError("node identity must be resolved before broadcasting")
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        self._sock.setblocking(False)
        self._running = True
        self._task = supervised_task(self._broadcast_loop(), name="discovery-broadcast")
        logger.info(
            "[Chat/Discovery] announcing {} as {!r} to {}:{} every {:.0f}s",
            self.state.identity.ip, self.state.identity.nickname,
            self.broadcast_address, self.port, self.interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._sock:
            self._sock.close()
            self._sock = None

    # -- announcements -------------------------------------------------------

    def announcement(self) -> Announcement:
        identity = self.state.identity
        assert identity is not None
        return Announcement(ip=identity.ip, nickname=identity.nickname)

    async def announce_once(self) -> bool:
        """Send a single announcement. Returns ``False`` if the send failed."""
        if self._sock is None:
            return False
        loop = asyncio.get_running_loop()
        try:
            payload = self.announcement().encode()
            await loop.sock_sendto(self._sock, payload, (self.broadcast_address, self.port))
            return True
        except (OSError, UnicodeEncodeError) as exc:
            logger.warning("[Chat/Discovery] broadcast failed, retrying next tick: {}", exc)
            return False

    async def _broadcast_loop(self) -> None:
        while self._running:
            await self.announce_once()
            await asyncio.sleep(self.interval)


class DiscoveryListener:
    """Receives announcements and keeps the peer directory up to date.

    Parameters
    ----------
    state:
        Shared node state holding the peer directory and self identity.
    port:
        UDP port to bind (default 8888).
    host:
        Interface to bind (default all interfaces).
    """

    def __init__(self, state: NodeState, port: int = DISCOVERY_PORT, host: str = ""):
        self.state = state
        self.port = port
        self.host = host
        self._running = False
        self._sock: socket.socket | None = None
        self._task: asyncio.Task | None = None
        self._callbacks: list[PeerCallback] = []

    def on_peer_discovered(self, callback: PeerCallback) -> None:
        """Register a callback for peers seen for the first time."""
        self._callbacks.append(callback)

    @property
    def bound_port(self) -> int:
        """Port actually bound (useful when ``port=0``)."""
        if self._sock is None:
            return 0
        return self._sock.getsockname()[1]

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                pass
        try:
            sock.bind((self.host, self.port))
        except OSError as exc:
            sock.close()
            raise StartupError(f"cannot bind discovery port UDP {self.port}: {exc}") from exc
        sock.setblocking(False)
        self._sock = sock
        self._running = True
        self._task = supervised_task(self._listen_loop(), name="discovery-listen")
        logger.info("[Chat/Discovery] listening on UDP {}", self.bound_port)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._sock:
            self._sock.close()
            self._sock = None
        logger.info("[Chat/Discovery] stopped")

    # -- receiving -----------------------------------------------------------

    async def _listen_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            try:
                data, addr = await loop.sock_recvfrom(self._sock, MAX_DATAGRAM_BYTES)  # type: ignore[arg-type]
            except OSError as exc:
                if not self._running:
                    break
                logger.warning("[Chat/Discovery] receive error: {}", exc)
                await asyncio.sleep(0.1)
                continue
            self.handle_datagram(data, addr[0])

    def handle_datagram(self, data: bytes, source_ip: str = "") -> Announcement | None:
        """Process one received datagram.

        Returns the decoded announcement, or *None* if the payload was not an
        announcement (such payloads are dropped without touching the
        directory).
        """
        ann = Announcement.try_decode(data)
        if ann is None:
            logger.debug("[Chat/Discovery] ignoring non-announcement datagram from {}", source_ip)
            return None

        is_new = self.state.peers.upsert(ann.ip, ann.nickname)
        if ann.ip == self.state.self_ip:
            return ann  # own announcement, recorded but not reported
        if is_new:
            logger.info("[Chat/Discovery] new peer: {} @ {}", ann.nickname, ann.ip)
            self._notify(PeerInfo(ip=ann.ip, nickname=ann.nickname))
        return ann

    def _notify(self, peer: PeerInfo) -> None:
        for cb in self._callbacks:
            try:
                cb(peer)
            except Exception as exc:
                logger.error("[Chat/Discovery] peer callback error: {}", exc)
