"""
messages.py — the wire vocabulary and the CrossingEvent record.

What this module does:
- Names every message "type" we send or accept.
- Builds the outgoing messages (challenge, auth results, relayed crossings,
  acknowledgements, keep-alives, closing notices).
- Validates an inbound "crossing" frame into a CrossingEvent.

The crossing payload is opaque: we base64url it in and out and never look
inside.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .crypto import b64url_decode, b64url_encode
from .errors import FrameError

PROTOCOL = "zrelay"
VERSION = 1
DEFAULT_CHANNEL = ""
MAX_CHANNEL_LENGTH = 64
MAX_PAYLOAD_SIZE = 64 * 1024

# -----------------------
# Public message type tags
# -----------------------
CHALLENGE = "challenge"
AUTH = "auth"
AUTH_OK = "auth_ok"
AUTH_BAD = "auth_bad"
CROSSING = "crossing"
CROSSED = "crossed"
PING = "ping"
PONG = "pong"
CLOSING = "closing"


@dataclass(frozen=True)
class CrossingEvent:
    """One object crossing the barrier, as accepted from its origin session."""
    origin: int
    seq: int
    payload: bytes = field(repr=False)
    channel: str = DEFAULT_CHANNEL
    received_at: float = field(default_factory=time.time)


def with_cookie(msg: Dict[str, Any], cookie: Any) -> Dict[str, Any]:
    """Echo a request's cookie onto a response. Only scalars are echoed."""
    if cookie is not None and not isinstance(cookie, (dict, list)):
        msg["cookie"] = cookie
    return msg


def challenge(nonce: bytes) -> Dict[str, Any]:
    return {"type": CHALLENGE, "nonce": b64url_encode(nonce), "proto": PROTOCOL, "version": VERSION}


def auth(response: bytes) -> Dict[str, Any]:
    return {"type": AUTH, "hash": b64url_encode(response)}


def auth_ok(session_id: int) -> Dict[str, Any]:
    return {"type": AUTH_OK, "session": session_id}


def auth_bad(reason: str) -> Dict[str, Any]:
    return {"type": AUTH_BAD, "reason": reason}


def closing(reason: str) -> Dict[str, Any]:
    return {"type": CLOSING, "reason": reason}


def ping(cookie: Any = None) -> Dict[str, Any]:
    return with_cookie({"type": PING}, cookie)


def pong(cookie: Any = None) -> Dict[str, Any]:
    return with_cookie({"type": PONG}, cookie)


def crossing(seq: int, payload: bytes, channel: str = DEFAULT_CHANNEL, cookie: Any = None) -> Dict[str, Any]:
    """Peer -> server crossing frame."""
    msg = {"type": CROSSING, "seq": seq, "payload": b64url_encode(payload)}
    if channel != DEFAULT_CHANNEL:
        msg["channel"] = channel
    return with_cookie(msg, cookie)


def relayed(event: CrossingEvent) -> Dict[str, Any]:
    """Server -> peer crossing frame. Built once per event, shared by all destinations."""
    return {
        "type": CROSSING,
        "origin": event.origin,
        "seq": event.seq,
        "channel": event.channel,
        "payload": b64url_encode(event.payload),
        "ts": int(event.received_at * 1000),
    }


def crossed(event: CrossingEvent, delivered: int, cookie: Any = None) -> Dict[str, Any]:
    """Acknowledgement back to the origin."""
    msg = {"type": CROSSED, "seq": event.seq, "channel": event.channel, "delivered": delivered}
    return with_cookie(msg, cookie)


# -----------------------
# Inbound validation
# -----------------------

def expect_int(msg: Dict[str, Any], key: str) -> int:
    val = msg.get(key)
    # bool is an int subclass; True is not a sequence number.
    if not isinstance(val, int) or isinstance(val, bool):
        raise FrameError(f"Needed a number for {key!r}, got something else")
    return val


def expect_string(msg: Dict[str, Any], key: str, max_length: int, default: Optional[str] = None) -> str:
    val = msg.get(key, default)
    if not isinstance(val, str):
        raise FrameError(f"Needed a string for {key!r}, got something else")
    if len(val) > max_length:
        raise FrameError(f"String {key!r} was too long")
    return val


def parse_auth(msg: Dict[str, Any]) -> bytes:
    """Pull the response hash out of an 'auth' frame."""
    encoded = expect_string(msg, "hash", max_length=128)
    try:
        return b64url_decode(encoded)
    except ValueError as exc:
        raise FrameError("Received an auth hash that is not base64url") from exc


def parse_crossing(msg: Dict[str, Any], origin: int, max_payload: int = MAX_PAYLOAD_SIZE) -> CrossingEvent:
    """
    Validate a peer's 'crossing' frame.

    Raises:
        FrameError: missing/mistyped fields, bad base64, or oversized payload.
    """
    seq = expect_int(msg, "seq")
    channel = expect_string(msg, "channel", MAX_CHANNEL_LENGTH, default=DEFAULT_CHANNEL)
    # base64 grows data by 4/3; reject before decoding anything huge.
    encoded = expect_string(msg, "payload", (max_payload + 2) * 4 // 3)
    try:
        payload = b64url_decode(encoded)
    except ValueError as exc:
        raise FrameError("Received payload was invalid base64url") from exc
    if len(payload) > max_payload:
        raise FrameError("Received payload was too many bytes long")
    return CrossingEvent(origin=origin, seq=seq, payload=payload, channel=channel)
