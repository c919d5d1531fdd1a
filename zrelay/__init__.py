"""
zrelay — relay server for barrier crossings between game-mod peers.

Each connected peer reports objects crossing a shared virtual boundary; the
server authenticates peers with a shared-secret challenge, checks that every
peer numbers its crossings 1, 2, 3, ... without gaps, and fans each crossing
out to every other authenticated peer in the order its origin sent them.

Set ZRELAY_SECRET (or ZRELAY_SECRET_FILE) on the server and every peer, or
pass --secret / --secret-file. With no secret every peer is trusted.
"""
from .config import ServerConfig, load_shared_secret
from .crypto import SharedSecret
from .errors import AuthError, ConfigError, FrameError, SequenceError, TransportError, ZRelayError
from .events import Notification, NotificationKind, Notifier
from .messages import CrossingEvent
from .peer import PeerClient
from .server import RelayServer

__all__ = [
    "AuthError",
    "ConfigError",
    "CrossingEvent",
    "FrameError",
    "Notification",
    "NotificationKind",
    "Notifier",
    "PeerClient",
    "RelayServer",
    "SequenceError",
    "ServerConfig",
    "SharedSecret",
    "TransportError",
    "ZRelayError",
    "load_shared_secret",
]

__version__ = "0.8.1"
