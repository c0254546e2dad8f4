"""Session coordination and the LINE Messaging API client."""

from .channel import SessionChannel
from .coordinator import ConnectionCoordinator, Disposition
from .line_client import LineMessagingClient, get_line_client
from .session_table import SessionEntry, SessionTable

__all__ = [
    "ConnectionCoordinator",
    "Disposition",
    "LineMessagingClient",
    "SessionChannel",
    "SessionEntry",
    "SessionTable",
    "get_line_client",
]
