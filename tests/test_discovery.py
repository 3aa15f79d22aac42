"""Tests for announcement broadcasting and the discovery listener."""

import asyncio
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lanchat.errors import StartupError
from lanchat.p2p.directory import NodeState, SelfIdentity
from lanchat.p2p.discovery import DiscoveryBroadcaster, DiscoveryListener, get_outbound_ip


def _state(self_ip: str = "10.0.0.1", nickname: str = "me") -> NodeState:
    state = NodeState(nickname)
    state.identity = SelfIdentity(nickname=nickname, ip=self_ip)
    return state


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Outbound address lookup
# ---------------------------------------------------------------------------


class TestOutboundIP:
    def test_returns_local_endpoint(self):
        sock = MagicMock()
        sock.getsockname.return_value = ("192.168.1.5", 40000)
        with patch("lanchat.p2p.discovery.socket.socket", return_value=sock):
            assert get_outbound_ip() == "192.168.1.5"
        sock.connect.assert_called_once_with(("8.8.8.8", 80))
        sock.close.assert_called_once()

    def test_falls_back_without_route(self):
        sock = MagicMock()
        sock.connect.side_effect = OSError("Network is unreachable")
        with patch("lanchat.p2p.discovery.socket.socket", return_value=sock):
            assert get_outbound_ip("10.255.255.1", 1) == "127.0.0.1"
        sock.close.assert_called_once()


# ---------------------------------------------------------------------------
# Listener (handler level, no sockets)
# ---------------------------------------------------------------------------


class TestDiscoveryListenerHandling:
    def test_new_peer_recorded_and_reported(self):
        state = _state()
        listener = DiscoveryListener(state)
        seen = []
        listener.on_peer_discovered(seen.append)

        ann = listener.handle_datagram(b"IP: 10.0.0.5, Name: Alice", "10.0.0.5")

        assert ann is not None
        assert state.peers.nickname_for("10.0.0.5") == "Alice"
        assert [(p.ip, p.nickname) for p in seen] == [("10.0.0.5", "Alice")]

    def test_repeat_announcement_not_reported_again(self):
        state = _state()
        listener = DiscoveryListener(state)
        seen = []
        listener.on_peer_discovered(seen.append)

        listener.handle_datagram(b"IP: 10.0.0.5, Name: Alice")
        listener.handle_datagram(b"IP: 10.0.0.5, Name: Alice")
        listener.handle_datagram(b"IP: 10.0.0.5, Name: Alicia")

        assert len(seen) == 1
        assert state.peers.nickname_for("10.0.0.5") == "Alicia"

    def test_self_announcement_recorded_but_not_reported(self):
        state = _state(self_ip="10.0.0.1")
        listener = DiscoveryListener(state)
        seen = []
        listener.on_peer_discovered(seen.append)

        listener.handle_datagram(b"IP: 10.0.0.1, Name: me")

        assert seen == []
        assert "10.0.0.1" in state.peers

    def test_malformed_payload_ignored(self):
        state = _state()
        listener = DiscoveryListener(state)
        seen = []
        listener.on_peer_discovered(seen.append)

        assert listener.handle_datagram(b"IP: 10.0.0.5", "10.0.0.5") is None
        assert listener.handle_datagram(b'{"node_id": "other"}', "10.0.0.6") is None

        assert len(state.peers) == 0
        assert seen == []

    def test_failing_callback_does_not_block_others(self):
        state = _state()
        listener = DiscoveryListener(state)
        seen = []
        listener.on_peer_discovered(MagicMock(side_effect=RuntimeError("boom")))
        listener.on_peer_discovered(seen.append)

        listener.handle_datagram(b"IP: 10.0.0.5, Name: Alice")

        assert len(seen) == 1

    def test_announced_address_is_the_key(self):
        """The directory is keyed by the address in the payload, not the UDP source."""
        state = _state()
        listener = DiscoveryListener(state)
        listener.handle_datagram(b"IP: 10.0.0.5, Name: Alice", "10.0.0.200")
        assert "10.0.0.5" in state.peers
        assert "10.0.0.200" not in state.peers


# ---------------------------------------------------------------------------
# Real sockets on localhost
# ---------------------------------------------------------------------------


class TestDiscoverySockets:
    @pytest.mark.asyncio
    async def test_listener_receives_datagram(self):
        state = _state()
        listener = DiscoveryListener(state, port=0, host="127.0.0.1")
        await listener.start()
        try:
            sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sender.sendto(b"garbage first", ("127.0.0.1", listener.bound_port))
                sender.sendto(b"IP: 10.0.0.8, Name: Dora", ("127.0.0.1", listener.bound_port))
            finally:
                sender.close()
            await _wait_for(lambda: "10.0.0.8" in state.peers)
            assert state.peers.nickname_for("10.0.0.8") == "Dora"
            assert len(state.peers) == 1
        finally:
            await listener.stop()

    @pytest.mark.asyncio
    async def test_broadcaster_announces_immediately(self):
        receiving = _state(self_ip="10.0.0.1", nickname="listener")
        listener = DiscoveryListener(receiving, port=0, host="127.0.0.1")
        seen = []
        listener.on_peer_discovered(seen.append)
        await listener.start()

        announcing = _state(self_ip="10.9.9.9", nickname="Eve Online")
        broadcaster = DiscoveryBroadcaster(
            announcing,
            port=listener.bound_port,
            broadcast_address="127.0.0.1",
            interval=60.0,
        )
        await broadcaster.start()
        try:
            await _wait_for(lambda: len(seen) == 1)
            assert seen[0].ip == "10.9.9.9"
            assert seen[0].nickname == "Eve Online"
        finally:
            await broadcaster.stop()
            await listener.stop()

    @pytest.mark.asyncio
    async def test_listener_bind_failure_is_startup_error(self):
        state = _state()
        listener = DiscoveryListener(state, port=0, host="203.0.113.250")
        with pytest.raises(StartupError):
            await listener.start()

    @pytest.mark.asyncio
    async def test_broadcaster_requires_identity(self):
        broadcaster = DiscoveryBroadcaster(NodeState("me"))
        with pytest.raises(RuntimeError):
            await broadcaster.start()


class TestBroadcasterFailures:
    @pytest.mark.asyncio
    async def test_send_failure_is_not_fatal(self):
        broadcaster = DiscoveryBroadcaster(_state(), port=9, broadcast_address="127.0.0.1", interval=60.0)
        broadcaster._sock = MagicMock()
        loop = asyncio.get_running_loop()
        with patch.object(loop, "sock_sendto", AsyncMock(side_effect=OSError("network down"))):
            assert await broadcaster.announce_once() is False

    @pytest.mark.asyncio
    async def test_loop_keeps_going_after_failure(self):
        broadcaster = DiscoveryBroadcaster(_state(), interval=0.01)
        broadcaster.announce_once = AsyncMock(return_value=False)
        broadcaster._running = True
        task = asyncio.create_task(broadcaster._broadcast_loop())
        await asyncio.sleep(0.05)
        broadcaster._running = False
        await asyncio.wait_for(task, 1.0)
        assert broadcaster.announce_once.await_count >= 2

    def test_announcement_uses_identity(self):
        broadcaster = DiscoveryBroadcaster(_state(self_ip="10.0.0.3", nickname="Zed"))
        assert broadcaster.announcement().encode() == b"IP: 10.0.0.3, Name: Zed"

    @pytest.mark.asyncio
    async def test_unencodable_nickname_is_not_fatal(self):
        broadcaster = DiscoveryBroadcaster(_state(nickname="x\udcff"), interval=0.01)
        broadcaster._sock = MagicMock()
        loop = asyncio.get_running_loop()
        with patch.object(loop, "sock_sendto", AsyncMock()) as sendto:
            assert await broadcaster.announce_once() is False
            sendto.assert_not_awaited()

            broadcaster._running = True
            task = asyncio.create_task(broadcaster._broadcast_loop())
            await asyncio.sleep(0.05)
            assert not task.done()
            broadcaster._running = False
            await asyncio.wait_for(task, 1.0)
