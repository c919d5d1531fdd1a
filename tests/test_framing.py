"""Tests for the length-prefixed, optionally compressed frame codec."""

import asyncio
import json
import sys
import zlib

import pytest

from zrelay.errors import FrameError
from zrelay.framing import (
    FLAG_ZLIB,
    HEADER_STRUCT,
    FrameDecoder,
    FrameReader,
    encode_frame,
)


def raw_frame(body: bytes, flags: int = 0) -> bytes:
    return HEADER_STRUCT.pack(len(body), flags) + body


class TestEncode:
    """Outgoing frames."""

    def test_small_message_uncompressed(self) -> None:
        """Short bodies go out as plain JSON."""
        frame = encode_frame({"type": "ping"})
        length, flags = HEADER_STRUCT.unpack_from(frame)
        assert flags == 0
        assert frame[HEADER_STRUCT.size:] == b'{"type":"ping"}'
        assert length == len(b'{"type":"ping"}')

    def test_large_message_compressed(self) -> None:
        """Bodies over the threshold are zlib-compressed and flagged."""
        msg = {"type": "crossing", "payload": "A" * 4000}
        frame = encode_frame(msg, compress_threshold=512)
        length, flags = HEADER_STRUCT.unpack_from(frame)
        assert flags & FLAG_ZLIB
        assert length < 4000
        assert json.loads(zlib.decompress(frame[HEADER_STRUCT.size:])) == msg

    def test_incompressible_body_left_alone(self) -> None:
        """Compression is skipped when it wouldn't shrink the body."""
        frame = encode_frame({"type": "x", "p": "ab"}, compress_threshold=0)
        _, flags = HEADER_STRUCT.unpack_from(frame)
        assert flags == 0

    def test_oversized_message_refused(self) -> None:
        """We never build a frame larger than the limit."""
        with pytest.raises(FrameError):
            encode_frame({"type": "x", "p": "A" * 100}, max_frame_size=50)

    def test_unserializable_message(self) -> None:
        """Non-JSON values are a FrameError, not a TypeError."""
        with pytest.raises(FrameError):
            encode_frame({"type": "x", "p": b"bytes"})


class TestDecoder:
    """Incremental decoding."""

    def test_byte_at_a_time(self) -> None:
        """A frame split across many reads still comes out whole, once."""
        frame = encode_frame({"type": "crossing", "seq": 1})
        decoder = FrameDecoder()
        out = []
        for i in range(len(frame)):
            out.extend(decoder.feed(frame[i:i + 1]))
            if i < len(frame) - 1:
                assert out == []
        assert out == [{"type": "crossing", "seq": 1}]
        assert decoder.at_boundary()

    def test_several_frames_in_one_read(self) -> None:
        """Back-to-back frames are all returned, in order."""
        data = b"".join(encode_frame({"type": "t", "n": n}) for n in range(5))
        assert [m["n"] for m in FrameDecoder().feed(data)] == [0, 1, 2, 3, 4]

    def test_compressed_frame_decodes(self) -> None:
        """Flagged frames are inflated before parsing."""
        msg = {"type": "crossing", "payload": "B" * 5000}
        assert FrameDecoder().feed(encode_frame(msg)) == [msg]

    def test_declared_length_over_limit(self) -> None:
        """An oversized length prefix fails before the body arrives."""
        decoder = FrameDecoder(max_frame_size=100)
        with pytest.raises(FrameError, match="too large"):
            decoder.feed(HEADER_STRUCT.pack(101, 0))

    def test_zip_bomb_rejected(self) -> None:
        """Decompressed size is capped too."""
        body = zlib.compress(json.dumps({"type": "x", "p": "A" * 10000}).encode())
        decoder = FrameDecoder(max_frame_size=1000)
        with pytest.raises(FrameError, match="too large"):
            decoder.feed(raw_frame(body, FLAG_ZLIB))

    def test_bad_compressed_data(self) -> None:
        """Corrupt zlib data is a FrameError."""
        with pytest.raises(FrameError, match="Decompression"):
            FrameDecoder().feed(raw_frame(b"not zlib at all", FLAG_ZLIB))

    def test_truncated_compressed_data(self) -> None:
        """A zlib stream that stops early is a FrameError."""
        body = zlib.compress(b'{"type":"x"}')[:-4]
        with pytest.raises(FrameError):
            FrameDecoder().feed(raw_frame(body, FLAG_ZLIB))

    def test_unknown_flags(self) -> None:
        """Reserved flag bits must be zero."""
        with pytest.raises(FrameError, match="flags"):
            FrameDecoder().feed(raw_frame(b'{"type":"x"}', 0x80))

    @pytest.mark.parametrize("body", [
        b"{not json",
        b"\xff\xfe",
        b"[1, 2]",
        b'"hello"',
        b"{}",
        b'{"type": 5}',
    ])
    def test_malformed_bodies(self, body) -> None:
        """Invalid JSON, non-objects and missing/non-string types are rejected."""
        with pytest.raises(FrameError):
            FrameDecoder().feed(raw_frame(body))

    def test_deep_nesting(self) -> None:
        """JSON nested past the parser's recursion limit is a FrameError."""
        with pytest.raises(FrameError):
            FrameDecoder().feed(raw_frame(b"[" * 100000))

    @pytest.mark.skipif(not hasattr(sys, "get_int_max_str_digits"), reason="no integer digit limit")
    def test_huge_integer_literal(self) -> None:
        """An integer past the interpreter's digit limit is a FrameError."""
        body = b'{"type":"crossing","seq":1' + b"0" * 5000 + b"}"
        with pytest.raises(FrameError):
            FrameDecoder().feed(raw_frame(body))

    def test_good_frames_before_a_bad_one(self) -> None:
        """Messages ahead of a bad frame in the same read are still returned."""
        decoder = FrameDecoder()
        data = encode_frame({"type": "crossing", "seq": 1}) + raw_frame(b"not json")
        assert decoder.feed(data) == [{"type": "crossing", "seq": 1}]
        with pytest.raises(FrameError, match="Invalid JSON"):
            decoder.raise_pending()
        with pytest.raises(FrameError, match="Invalid JSON"):
            decoder.feed(b"")

    def test_decoders_do_not_share_state(self) -> None:
        """Half a frame on one connection never affects another."""
        frame = encode_frame({"type": "a"})
        first = FrameDecoder()
        first.feed(frame[:3])
        second = FrameDecoder()
        assert second.at_boundary()
        assert second.feed(frame) == [{"type": "a"}]
        assert first.pending == 3


class TestFrameReader:
    """Async reading from a StreamReader."""

    def test_reads_messages_then_none_at_eof(self) -> None:
        """Clean EOF between frames reads as None."""
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(encode_frame({"type": "a"}) + encode_frame({"type": "b"}))
            reader.feed_eof()
            frames = FrameReader(reader)
            return [await frames.read(), await frames.read(), await frames.read()]

        assert asyncio.run(scenario()) == [{"type": "a"}, {"type": "b"}, None]

    def test_eof_mid_frame(self) -> None:
        """EOF inside a frame is a FrameError."""
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(encode_frame({"type": "a"})[:-2])
            reader.feed_eof()
            await FrameReader(reader).read()

        with pytest.raises(FrameError, match="mid-frame"):
            asyncio.run(scenario())

    def test_bad_frame_after_good_one_in_same_read(self) -> None:
        """The good message is read first; the error comes with the next read."""
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(encode_frame({"type": "a"}) + raw_frame(b"not json"))
            frames = FrameReader(reader)
            first = await frames.read()
            with pytest.raises(FrameError, match="Invalid JSON"):
                await frames.read()
            return first

        assert asyncio.run(scenario()) == {"type": "a"}
