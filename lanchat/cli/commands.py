"""Interactive command loop and ``lanchat`` entry point.

Commands
--------
- ``peers``            list discovered peers
- ``inbox``            list received messages
- ``send <nickname>``  prompt for a message and send it to *nickname*
- ``exit``             stop the node and quit

Example::

    $ lanchat
    Enter your name: alice
    Private listener started.
    Peer discovered: IP=192.168.1.11, Name=bob
    > send bob
    Enter message: hello!
    > exit
    Exiting...
"""

from __future__ import annotations

import argparse
import asyncio
import io
import sys
import threading
from typing import Awaitable, Callable, TextIO

from loguru import logger
from pydantic import ValidationError

from lanchat import __version__
from lanchat.config.loader import load_config
from lanchat.config.schema import ChatConfig
from lanchat.errors import StartupError
from lanchat.p2p.directory import InboxEntry, PeerInfo
from lanchat.p2p.node import ChatNode

PROMPT = "> "

ReadLine = Callable[[str], Awaitable["str | None"]]
Output = Callable[[str], None]


class LineReader:
    """Reads one line of input per call on a daemon thread.

    A prompt left waiting on stdin must not keep the process alive after
    ``exit``, which rules out the event loop's default executor.
    """

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stdin
        # Undecodable input becomes U+FFFD instead of ending the session.
        if isinstance(self.stream, io.TextIOWrapper):
            self.stream.reconfigure(errors="replace")

    async def __call__(self, prompt: str = "") -> str | None:
        if prompt:
            print(prompt, end="", flush=True)
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[str] = loop.create_future()

        def _deliver(line: str) -> None:
            if not fut.done():
                fut.set_result(line)

        def _fail(exc: BaseException) -> None:
            if not fut.done():
                fut.set_exception(exc)

        def _worker() -> None:
            try:
                line = self.stream.readline()
            except OSError:
                line = ""
            except ValueError as exc:
                # Only a closed stream counts as EOF.
                if not self.stream.closed:
                    loop.call_soon_threadsafe(_fail, exc)
                    return
                line = ""
            loop.call_soon_threadsafe(_deliver, line)

        threading.Thread(target=_worker, name="lanchat-stdin", daemon=True).start()
        line = await fut
        if not line:
            return None  # EOF
        return line.rstrip("\r\n")


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def describe_age(seconds: float) -> str:
    if seconds == 60:
        return "a minute"
    return f"{seconds:g} seconds"


def format_discovery(peer: PeerInfo) -> str:
    return f"Peer discovered: IP={peer.ip}, Name={peer.nickname}"


def format_peers(peers: list[PeerInfo]) -> list[str]:
    return ["Peers:"] + [f"Name: {p.nickname}, IP: {p.ip}" for p in peers]


def format_inbox(entries: list[InboxEntry]) -> list[str]:
    lines = ["Inbox:"]
    for e in entries:
        lines.append(f"{e.content}\nFrom: IP={e.sender_ip}, Name={e.sender_nickname}")
        lines.append("|")
    return lines


# ---------------------------------------------------------------------------
# Command loop
# ---------------------------------------------------------------------------

class CommandLoop:
    """Text dispatcher over a running ``ChatNode``.

    Parameters
    ----------
    node:
        The node commands act on.
    read_line:
        Async callable returning the next input line (``None`` on EOF).
    out:
        Sink for user-facing output lines.
    """

    def __init__(self, node: ChatNode, read_line: ReadLine, out: Output = print):
        self.node = node
        self.read_line = read_line
        self.out = out

    async def run(self) -> None:
        while True:
            line = await self.read_line(PROMPT)
            if line is None:
                self.out("Exiting...")
                return
            if not await self.dispatch(line):
                return

    async def dispatch(self, line: str) -> bool:
        """Execute one command line. Returns ``False`` when the loop should end."""
        command = line.strip()
        if command == "peers":
            self.show_peers()
        elif command == "inbox":
            self.show_inbox()
        elif command == "exit":
            self.out("Exiting...")
            return False
        elif command.startswith("send "):
            await self.send(command[len("send "):].strip())
        else:
            self.out("Invalid command.")
        return True

    def show_peers(self) -> None:
        for line in format_peers(self.node.peers()):
            self.out(line)

    def show_inbox(self) -> None:
        for line in format_inbox(self.node.inbox()):
            self.out(line)

    async def send(self, nickname: str) -> None:
        target = self.node.resolve(nickname)
        if target is None:
            self.out("Peer not found.")
            return
        if target.stale:
            age = describe_age(self.node.config.stale_after)
            self.out(f"Warning: The peer has not been active for more than {age}.")

        text = await self.read_line("Enter message: ")
        if text is None:
            return
        if not await self.node.send(target, text.strip()):
            self.out(f"Could not deliver message to {nickname}.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lanchat",
        description="Serverless nickname chat for the local network",
    )
    parser.add_argument("--name", dest="nickname", help="Your nickname (prompted for if omitted)")
    parser.add_argument("--config", help="Path to a JSON config file (default ~/.lanchat/config.json)")
    parser.add_argument("--discovery-port", type=int, help="UDP port for announcements (default 8888)")
    parser.add_argument("--message-port", type=int, help="TCP port for private messages (default 1234)")
    parser.add_argument("--broadcast-address", help="Announcement destination (default 255.255.255.255)")
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"],
        help="Diagnostic log level on stderr (default WARNING)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


async def prompt_nickname(read_line: ReadLine) -> str | None:
    """Ask until a non-empty nickname is entered; *None* on EOF."""
    while True:
        name = await read_line("Enter your name: ")
        if name is None:
            return None
        name = name.strip()
        try:
            name.encode("utf-8")
        except UnicodeEncodeError:
            continue
        if name:
            return name


async def run(config: ChatConfig, read_line: ReadLine, out: Output = print) -> int:
    """Run a node with an interactive loop until ``exit`` or EOF."""
    if not config.nickname:
        nickname = await prompt_nickname(read_line)
        if nickname is None:
            return 0
        config = config.model_copy(update={"nickname": nickname})

    node = ChatNode(config)
    node.on_peer_discovered(lambda peer: out(format_discovery(peer)))
    try:
        await node.start()
    except StartupError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    out("Private listener started.")
    try:
        await CommandLoop(node, read_line, out).run()
    finally:
        await node.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(
            args.config,
            nickname=args.nickname,
            discovery_port=args.discovery_port,
            message_port=args.message_port,
            broadcast_address=args.broadcast_address,
            log_level=args.log_level,
        )
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)
    try:
        return asyncio.run(run(config, LineReader()))
    except KeyboardInterrupt:
        print("\nExiting...")
        return 0
