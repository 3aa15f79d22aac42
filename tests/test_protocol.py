"""Tests for the announcement and private-message wire formats."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from lanchat.errors import AnnouncementError
from lanchat.p2p.protocol import Announcement, read_message, write_message


# ---------------------------------------------------------------------------
# Announcement
# ---------------------------------------------------------------------------


class TestAnnouncement:
    def test_encode(self):
        ann = Announcement(ip="192.168.1.11", nickname="bob")
        assert ann.encode() == b"IP: 192.168.1.11, Name: bob"

    def test_decode_well_formed(self):
        ann = Announcement.decode(b"IP: 10.0.0.5, Name: Alice")
        assert ann == Announcement(ip="10.0.0.5", nickname="Alice")

    def test_nickname_keeps_spaces_and_punctuation(self):
        ann = Announcement.decode(b"IP: 10.0.0.5, Name: Alice B., Name: x")
        assert ann.nickname == "Alice B., Name: x"

    def test_trailing_newline_tolerated(self):
        ann = Announcement.decode(b"IP: 10.0.0.5, Name: Alice\n")
        assert ann.nickname == "Alice"

    def test_unicode_nickname(self):
        ann = Announcement(ip="10.0.0.7", nickname="Zoë 日本")
        assert Announcement.decode(ann.encode()).nickname == "Zoë 日本"

    @pytest.mark.parametrize(
        "payload",
        [
            b"IP: 10.0.0.5",
            b"IP: 10.0.0.5, Name: ",
            b"Name: Alice",
            b'{"node_id": "x", "tcp_port": 18800}',
            b"IP: 10.0.0, Name: Alice",
            b"IP: 300.0.0.1, Name: Alice",
            b"hello IP: 10.0.0.5, Name: Alice",
            b"\xff\xfe\x00",
            b"",
        ],
    )
    def test_malformed_raises(self, payload):
        with pytest.raises(AnnouncementError):
            Announcement.decode(payload)

    def test_announcement_error_is_value_error(self):
        with pytest.raises(ValueError):
            Announcement.decode(b"garbage")

    def test_try_decode_returns_none(self):
        assert Announcement.try_decode(b"IP: 10.0.0.5") is None
        assert Announcement.try_decode(b"IP: 10.0.0.5, Name: A") is not None


# ---------------------------------------------------------------------------
# Private messages
# ---------------------------------------------------------------------------


class TestMessageStream:
    @pytest.mark.asyncio
    async def test_read_message_single_read(self):
        reader = AsyncMock()
        reader.read = AsyncMock(return_value=b"hello there")
        assert await read_message(reader, 1024) == "hello there"
        reader.read.assert_awaited_once_with(1024)

    @pytest.mark.asyncio
    async def test_read_message_eof(self):
        reader = AsyncMock()
        reader.read = AsyncMock(return_value=b"")
        assert await read_message(reader) is None

    @pytest.mark.asyncio
    async def test_read_message_replaces_invalid_utf8(self):
        reader = AsyncMock()
        reader.read = AsyncMock(return_value=b"caf\xe9")
        assert await read_message(reader) == "caf�"

    def test_write_message_raw_bytes(self):
        writer = MagicMock()
        write_message(writer, "hi ünïcode")
        writer.write.assert_called_once_with("hi ünïcode".encode("utf-8"))
