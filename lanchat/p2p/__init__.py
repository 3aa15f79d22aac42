"""Peer-to-peer discovery and messaging over the local network.

Each node broadcasts a short text announcement on a well-known UDP port and
listens on the same port to build a table of peers keyed by IP address.
Messages travel over a fresh TCP connection per message, one message per
connection, no framing.
"""
