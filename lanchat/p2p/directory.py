"""Shared node state: the peer directory, the inbox and this node's identity.

Architecture
------------
- ``PeerDirectory`` maps a peer's IP address to its nickname and the time of
  its last announcement.  The address is the key; the nickname may change
  from one announcement to the next and the latest one wins.
- ``Inbox`` is the append-only list of messages received by this node, in
  the order their connections finished reading.
- ``NodeState`` owns both, plus the ``SelfIdentity``, and is handed to every
  component at construction time.

Peers and inbox share one ``threading.RLock``.  The interactive prompt reads
stdin from a worker thread while discovery and the message server run on the
event loop, so every operation takes the lock, and none of them awaits or
blocks on I/O while holding it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Iterator

Clock = Callable[[], float]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class PeerInfo:
    """Metadata about a discovered peer."""

    ip: str
    nickname: str
    last_seen: float = field(default_factory=time.time)


@dataclass(frozen=True)
class InboxEntry:
    """One received private message."""

    content: str
    sender_ip: str
    sender_nickname: str = ""   # Empty when the sender was never discovered
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SelfIdentity:
    """This node's nickname and the address other peers see it under."""

    nickname: str
    ip: str


# ---------------------------------------------------------------------------
# Peer directory
# ---------------------------------------------------------------------------

class PeerDirectory:
    """Thread-safe table of discovered peers keyed by IP address.

    Parameters
    ----------
    lock:
        Lock guarding the table.  Pass the ``NodeState`` lock to share one
        mutual-exclusion domain with the inbox.
    clock:
        Time source, ``time.time`` unless a test injects its own.
    """

    def __init__(self, lock: threading.RLock | None = None, clock: Clock = time.time) -> None:
        self._lock = lock or threading.RLock()
        self._clock = clock
        # ip → PeerInfo
        self._peers: dict[str, PeerInfo] = {}

    def upsert(self, ip: str, nickname: str) -> bool:
        """Record an announcement from *ip*.

        Returns ``True`` if the address was not known before.
        """
        now = self._clock()
        with self._lock:
            is_new = ip not in self._peers
            self._peers[ip] = PeerInfo(ip=ip, nickname=nickname, last_seen=now)
        return is_new

    def lookup_by_nickname(self, nickname: str) -> str | None:
        """Return the address announcing *nickname*, or *None*.

        If two peers use the same nickname, whichever entry the scan meets
        first is returned.
        """
        with self._lock:
            for ip, peer in self._peers.items():
                if peer.nickname == nickname:
                    return ip
        return None

    def get(self, ip: str) -> PeerInfo | None:
        with self._lock:
            peer = self._peers.get(ip)
            return replace(peer) if peer is not None else None

    def nickname_for(self, ip: str) -> str:
        """Return the nickname last announced by *ip*, or ``""``."""
        with self._lock:
            peer = self._peers.get(ip)
            return peer.nickname if peer is not None else ""

    def snapshot(self) -> list[PeerInfo]:
        """Return copies of all entries for display."""
        with self._lock:
            return [replace(p) for p in self._peers.values()]

    def is_stale(self, ip: str, threshold: float) -> bool:
        """``True`` if *ip* has been silent for more than *threshold* seconds.

        Unknown addresses are never stale.
        """
        now = self._clock()
        with self._lock:
            peer = self._peers.get(ip)
            return peer is not None and now - peer.last_seen > threshold

    def prune(self, max_age: float) -> list[PeerInfo]:
        """Remove peers silent for more than *max_age* seconds; return them."""
        now = self._clock()
        with self._lock:
            stale = [p for p in self._peers.values() if now - p.last_seen > max_age]
            for peer in stale:
                del self._peers[peer.ip]
        return stale

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def __contains__(self, ip: object) -> bool:
        with self._lock:
            return ip in self._peers


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

class Inbox:
    """Append-only, arrival-ordered list of received messages."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock or threading.RLock()
        self._entries: list[InboxEntry] = []

    def append(self, entry: InboxEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> list[InboxEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[InboxEntry]:
        return iter(self.entries())


# ---------------------------------------------------------------------------
# Node state
# ---------------------------------------------------------------------------

class NodeState:
    """Process-owned state shared by discovery, the server and the sender.

    ``identity`` is set once when the node starts and treated as read-only
    afterwards.
    """

    def __init__(self, nickname: str, clock: Clock = time.time) -> None:
        self.lock = threading.RLock()
        self.nickname = nickname
        self.identity: SelfIdentity | None = None
        self.peers = PeerDirectory(self.lock, clock=clock)
        self.inbox = Inbox(self.lock)

    @property
    def self_ip(self) -> str:
        return self.identity.ip if self.identity is not None else ""

    def record_message(self, content: str, sender_ip: str) -> InboxEntry:
        """Append a message, attributing it to whatever nickname *sender_ip*
        has right now.

        The lookup and the append happen under one acquisition of the lock.
        """
        with self.lock:
            entry = InboxEntry(
                content=content,
                sender_ip=sender_ip,
                sender_nickname=self.peers.nickname_for(sender_ip),
            )
            self.inbox.append(entry)
        return entry
