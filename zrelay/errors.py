"""
errors.py — the exception taxonomy shared by every zrelay module.

Per-connection errors (FrameError, AuthError, SequenceError, TransportError)
are fatal to one session only; the session catches them at its boundary and
turns them into a close. ConfigError is fatal to the process at startup.
"""


class ZRelayError(Exception):
    """Base class for every error raised by zrelay."""


class FrameError(ZRelayError):
    """Malformed, oversized or undecodable frame. Never retried."""


class AuthError(ZRelayError):
    """Bad challenge response or handshake timeout."""

    def __init__(self, message: str, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class SequenceError(ZRelayError):
    """Out-of-order, repeated or gapped sequence number (protocol violation)."""


class TransportError(ZRelayError):
    """Socket-level failure on one connection."""


class ConfigError(ZRelayError):
    """Unusable shared secret, bad option value, or unbindable listener."""


class SessionStateError(ZRelayError):
    """A trigger that is impossible in the session's current state."""
