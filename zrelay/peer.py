"""
peer.py — the client side of the relay protocol.

A game-mod peer (or a test, or `run_server --mode peer`) uses PeerClient to:
- connect and answer the challenge with the shared secret,
- send crossing events with automatically numbered sequences,
- receive relayed crossings from the other side(s).

Pings from the server are answered transparently inside recv().
"""

import asyncio
from collections import defaultdict
from typing import Any, Dict, Optional

from . import messages as m
from .crypto import SharedSecret, b64url_decode
from .errors import AuthError, FrameError, TransportError
from .framing import COMPRESS_THRESHOLD, MAX_FRAME_SIZE, FrameDecoder, FrameReader, write_frame


class PeerClient:
    def __init__(
        self,
        host: str,
        port: int,
        secret: Optional[SharedSecret] = None,
        max_frame_size: int = MAX_FRAME_SIZE,
        compress_threshold: int = COMPRESS_THRESHOLD,
    ) -> None:
        self.host = host
        self.port = port
        self.secret = secret
        self.max_frame_size = max_frame_size
        self.compress_threshold = compress_threshold
        self.session_id: Optional[int] = None
        self.challenged = False
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.frames: Optional[FrameReader] = None
        self._next_seq: Dict[str, int] = defaultdict(lambda: 1)

    async def open(self) -> None:
        """Open the TCP connection without doing the handshake."""
        try:
            self.reader, self.writer = await asyncio.open_connection(self.host, self.port)
        except OSError as exc:
            raise TransportError(f"Unable to connect to {self.host}:{self.port}: {exc}") from exc
        self.frames = FrameReader(self.reader, FrameDecoder(self.max_frame_size))

    async def connect(self) -> int:
        """
        Connect and authenticate. Returns the session id the server assigned.

        Raises:
            AuthError: the server rejected us, or challenged us with no secret.
            TransportError: connection refused or dropped mid-handshake.
        """
        await self.open()
        msg = await self._read_required()
        if msg["type"] == m.CHALLENGE:
            self.challenged = True
            if self.secret is None:
                raise AuthError("Server requires authentication but no secret was given")
            nonce = b64url_decode(msg["nonce"])
            await self.send(m.auth(self.secret.response_for(nonce)))
            msg = await self._read_required()

        if msg["type"] == m.AUTH_BAD:
            raise AuthError(msg.get("reason", "authentication failed"))
        if msg["type"] != m.AUTH_OK:
            raise FrameError(f"Unexpected {msg['type']!r} during handshake")
        self.session_id = msg["session"]
        return self.session_id

    async def send(self, msg: Dict[str, Any]) -> None:
        """Send a raw message (tests use this to break the protocol on purpose)."""
        if self.writer is None:
            raise TransportError("not connected")
        try:
            await write_frame(self.writer, msg, self.compress_threshold, self.max_frame_size)
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def send_crossing(self, payload: bytes, channel: str = m.DEFAULT_CHANNEL, cookie: Any = None) -> int:
        """Send the next crossing on `channel`; returns the sequence number used."""
        seq = self._next_seq[channel]
        await self.send(m.crossing(seq, payload, channel, cookie))
        self._next_seq[channel] = seq + 1
        return seq

    async def recv(self) -> Optional[Dict[str, Any]]:
        """Next message from the server, or None once it hung up."""
        if self.frames is None:
            raise TransportError("not connected")
        while True:
            try:
                msg = await self.frames.read()
            except (ConnectionError, OSError) as exc:
                raise TransportError(f"receive failed: {exc}") from exc
            if msg is not None and msg["type"] == m.PING:
                await self.send(m.pong(msg.get("cookie")))
                continue
            return msg

    async def expect(self, *types: str) -> Dict[str, Any]:
        """Skip ahead to the next message of one of `types`."""
        while True:
            msg = await self.recv()
            if msg is None:
                raise TransportError(f"connection closed while waiting for {', '.join(types)}")
            if msg["type"] in types:
                return msg

    async def recv_crossing(self) -> m.CrossingEvent:
        """Next relayed crossing, decoded. Acks and pongs are skipped."""
        msg = await self.expect(m.CROSSING, m.CLOSING)
        if msg["type"] == m.CLOSING:
            raise TransportError(f"server closed the session: {msg.get('reason')}")
        return m.CrossingEvent(
            origin=msg["origin"],
            seq=msg["seq"],
            payload=b64url_decode(msg["payload"]),
            channel=msg.get("channel", m.DEFAULT_CHANNEL),
            received_at=msg.get("ts", 0) / 1000,
        )

    async def close(self) -> None:
        if self.writer is None:
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        self.writer = None

    async def _read_required(self) -> Dict[str, Any]:
        msg = await self.recv()
        if msg is None:
            raise TransportError("server closed the connection during handshake")
        return msg

    async def __aenter__(self) -> "PeerClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
