import asyncio
import json
import struct
import zlib
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from .errors import FrameError

"""
framing.py — length-prefixed, optionally compressed JSON framing for asyncio
streams.

Protocol:
- Each message = 5-byte header + body.
  Header is `<IB`: little-endian unsigned 32-bit body length, then a flags
  byte. Bit 0 of the flags says the body is zlib-compressed.
- Body (after decompression) is compact UTF-8 JSON of an object that carries
  a string "type".
- Bodies longer than the compression threshold are compressed, but only when
  that actually makes them smaller.
- Hard cap on both the wire length and the decompressed length so a buggy or
  hostile peer can't make us allocate silly amounts of memory.

Decoding is incremental: `FrameDecoder.feed()` takes whatever the socket
produced and hands back every complete message. Each connection owns its own
decoder, so a half-read frame can never bleed into another connection.
"""

MAX_FRAME_SIZE = 1024 * 1024  # 1 MiB hard limit
COMPRESS_THRESHOLD = 512  # bytes of JSON before we bother with zlib
HEADER_STRUCT = struct.Struct("<IB")  # body length, flags
FLAG_ZLIB = 0x01
KNOWN_FLAGS = FLAG_ZLIB
READ_CHUNK = 64 * 1024


def encode_frame(
    obj: Dict[str, Any],
    compress_threshold: int = COMPRESS_THRESHOLD,
    max_frame_size: int = MAX_FRAME_SIZE,
) -> bytes:
    """
    Serialize a dict to compact JSON and wrap it in a frame.

    Raises:
        FrameError: if the message can't be serialized or is too large.
    """
    try:
        # Compact JSON: stable separators, keep non-ASCII as UTF-8 (not \u escapes).
        body = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise FrameError(f"Unserializable message: {exc}") from exc

    if len(body) > max_frame_size:
        raise FrameError("Frame exceeds maximum size")

    flags = 0
    if len(body) > compress_threshold:
        packed = zlib.compress(body)
        if len(packed) < len(body):
            body = packed
            flags |= FLAG_ZLIB

    return HEADER_STRUCT.pack(len(body), flags) + body


def decode_body(flags: int, body: bytes, max_frame_size: int = MAX_FRAME_SIZE) -> Dict[str, Any]:
    """Undo compression (if flagged) and parse the JSON object."""
    if flags & ~KNOWN_FLAGS:
        raise FrameError(f"Unknown frame flags: {flags:#04x}")

    if flags & FLAG_ZLIB:
        inflater = zlib.decompressobj()
        try:
            # Ask for one byte past the limit so we can tell "exactly max" from "too big".
            raw = inflater.decompress(body, max_frame_size + 1)
        except zlib.error as exc:
            raise FrameError(f"Decompression failed: {exc}") from exc
        if len(raw) > max_frame_size or inflater.unconsumed_tail:
            raise FrameError("Decompressed frame too large")
        if not inflater.eof:
            raise FrameError("Truncated compressed frame")
        body = raw

    # Decode + parse. If it's not valid UTF-8 JSON, surface a clean error.
    try:
        obj = json.loads(body.decode("utf-8"))
    except (ValueError, RecursionError) as exc:
        # ValueError covers bad UTF-8, bad JSON and over-long integer literals.
        # Keep the message short; no payload echo to avoid leaking big data.
        raise FrameError(f"Invalid JSON frame: {exc}") from exc

    if not isinstance(obj, dict):
        raise FrameError("Received non-object JSON")
    if not isinstance(obj.get("type"), str):
        raise FrameError("Received a message with invalid type")
    return obj


class FrameDecoder:
    """Accumulates stream bytes and yields complete messages."""

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self.max_frame_size = max_frame_size
        self._buf = bytearray()
        self._header: Optional[tuple] = None
        self._error: Optional[FrameError] = None

    @property
    def pending(self) -> int:
        """Bytes held for a frame that isn't complete yet."""
        return len(self._buf)

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """
        Add bytes from the wire and return every message they complete.

        A bad frame behind good ones in the same chunk is held back: the good
        messages are returned first and the error is raised by the next call
        (or by `raise_pending()`).

        Raises:
            FrameError: on a bad frame. The decoder is useless after that; the
            owning connection must be closed.
        """
        self.raise_pending()
        self._buf.extend(data)
        out = []
        try:
            self._decode_into(out)
        except FrameError as exc:
            if not out:
                raise
            self._error = exc
        return out

    def raise_pending(self) -> None:
        if self._error is not None:
            raise self._error

    def _decode_into(self, out: List[Dict[str, Any]]) -> None:
        while True:
            if self._header is None:
                if len(self._buf) < HEADER_STRUCT.size:
                    break
                length, flags = HEADER_STRUCT.unpack_from(self._buf)
                # Quick sanity check before waiting for (and buffering) the body.
                if length > self.max_frame_size:
                    raise FrameError(f"Frame too large: {length} > {self.max_frame_size}")
                del self._buf[:HEADER_STRUCT.size]
                self._header = (length, flags)

            length, flags = self._header
            if len(self._buf) < length:
                break
            body = bytes(self._buf[:length])
            del self._buf[:length]
            self._header = None
            out.append(decode_body(flags, body, self.max_frame_size))

    def at_boundary(self) -> bool:
        return self._header is None and not self._buf


class FrameReader:
    """Pulls messages off an asyncio stream one at a time."""

    def __init__(self, reader: asyncio.StreamReader, decoder: Optional[FrameDecoder] = None) -> None:
        self.reader = reader
        self.decoder = decoder or FrameDecoder()
        self._ready: Deque[Dict[str, Any]] = deque()

    async def read(self) -> Optional[Dict[str, Any]]:
        """
        Return the next message, or None when the peer closed cleanly between
        frames.

        Raises:
            FrameError: bad frame, or EOF in the middle of one.
        """
        while not self._ready:
            self.decoder.raise_pending()
            chunk = await self.reader.read(READ_CHUNK)
            if not chunk:
                if self.decoder.at_boundary():
                    return None
                raise FrameError("Connection closed mid-frame")
            self._ready.extend(self.decoder.feed(chunk))
        return self._ready.popleft()


async def write_frame(
    writer: asyncio.StreamWriter,
    obj: Dict[str, Any],
    compress_threshold: int = COMPRESS_THRESHOLD,
    max_frame_size: int = MAX_FRAME_SIZE,
) -> None:
    """Encode `obj`, write it, and wait for the transport to drain."""
    writer.write(encode_frame(obj, compress_threshold, max_frame_size))
    await writer.drain()  # Let the transport flush; important under backpressure.
