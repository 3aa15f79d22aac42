"""ChatNode: one lanchat process on the network.

Owns the ``NodeState`` and wires discovery, the message server and the sender
around it.  The interactive layer talks only to this class.
"""

from __future__ import annotations

from loguru import logger

from lanchat.config.schema import ChatConfig
from lanchat.p2p.directory import InboxEntry, NodeState, PeerInfo, SelfIdentity
from lanchat.p2p.discovery import (
    DiscoveryBroadcaster,
    DiscoveryListener,
    PeerCallback,
    get_outbound_ip,
)
from lanchat.p2p.resilience import PeriodicTask
from lanchat.p2p.transport import (
    MessageCallback,
    MessageSender,
    MessageServer,
    SendResult,
    SendTarget,
)


class ChatNode:
    """A peer: broadcaster, listener, message server and sender sharing state.

    Parameters
    ----------
    config:
        Node configuration.  ``config.nickname`` must be set.
    state:
        Pre-built state, mainly for tests; a fresh one is created otherwise.
    """

    def __init__(self, config: ChatConfig, state: NodeState | None = None):
        if not config.nickname:
            raise ValueError("nickname is required")
        self.config = config
        self.state = state or NodeState(config.nickname)

        self.listener = DiscoveryListener(self.state, port=config.discovery_port)
        self.broadcaster = DiscoveryBroadcaster(
            self.state,
            port=config.discovery_port,
            broadcast_address=config.broadcast_address,
            interval=config.broadcast_interval,
        )
        self.server = MessageServer(
            self.state,
            host=config.host,
            port=config.message_port,
            max_bytes=config.max_message_bytes,
            read_timeout=config.read_timeout,
        )
        self.sender = MessageSender(
            self.state,
            port=config.message_port,
            stale_after=config.stale_after,
            max_bytes=config.max_message_bytes,
        )

        self.sweeper: PeriodicTask | None = None
        if config.prune_after > 0:
            self.sweeper = PeriodicTask(
                "peer-sweep", self.prune_peers, interval=config.broadcast_interval,
            )
        self._running = False

    # -- wiring --------------------------------------------------------------

    def on_peer_discovered(self, callback: PeerCallback) -> None:
        self.listener.on_peer_discovered(callback)

    def on_message(self, callback: MessageCallback) -> None:
        self.server.on_message(callback)

    @property
    def running(self) -> bool:
        return self._running

    # -- lifecycle -----------------------------------------------------------

    def resolve_identity(self) -> SelfIdentity:
        """Work out this node's address once; later calls return the same identity."""
        if self.state.identity is None:
            ip = get_outbound_ip(self.config.probe_host, self.config.probe_port)
            self.state.identity = SelfIdentity(nickname=self.state.nickname, ip=ip)
        return self.state.identity

    async def start(self) -> None:
        """Bind the listening ports and start the background tasks.

        Raises ``StartupError`` if either port cannot be bound.  If any step
        fails, the components already started are stopped again first.
        """
        identity = self.resolve_identity()
        await self.listener.start()
        try:
            await self.server.start()
            await self.broadcaster.start()
            if self.sweeper is not None:
                self.sweeper.start()
        except Exception:
            await self.stop()
            raise
        self._running = True
        logger.info("[Chat/Node] {} started at {}", identity.nickname, identity.ip)

    async def stop(self) -> None:
        self._running = False
        # Errors in one component should not prevent stopping the others.
        if self.sweeper is not None:
            self.sweeper.stop()
        for name, component in (
            ("broadcaster", self.broadcaster),
            ("server", self.server),
            ("listener", self.listener),
        ):
            try:
                await component.stop()
            except Exception as exc:
                logger.error("[Chat/Node] {} stop error: {}", name, exc)

    # -- queries and actions -------------------------------------------------

    def peers(self) -> list[PeerInfo]:
        return self.state.peers.snapshot()

    def inbox(self) -> list[InboxEntry]:
        return self.state.inbox.entries()

    def resolve(self, nickname: str) -> SendTarget | None:
        return self.sender.resolve(nickname)

    async def send(self, target: SendTarget, text: str) -> bool:
        return await self.sender.send(target, text)

    async def send_to(self, nickname: str, text: str) -> SendResult:
        return await self.sender.send_to(nickname, text)

    def prune_peers(self) -> list[PeerInfo]:
        removed = self.state.peers.prune(self.config.prune_after)
        for peer in removed:
            logger.info("[Chat/Node] evicted silent peer {} @ {}", peer.nickname, peer.ip)
        return removed
