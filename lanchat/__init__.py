"""lanchat - serverless nickname chat for a local network.

Peers find each other through periodic UDP broadcast announcements and
exchange direct text messages over short-lived TCP connections.
"""

__version__ = "0.1.0"
