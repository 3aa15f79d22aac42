class LanChatError(Exception):
    pass


class AnnouncementError(LanChatError, ValueError):
    """Raised when a datagram is not a well-formed announcement."""


class StartupError(LanChatError):
    """Raised when the node cannot bind a port it needs to run."""
