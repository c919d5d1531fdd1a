"""Tests for message builders and crossing validation."""

import pytest

from zrelay import messages as m
from zrelay.crypto import b64url_encode
from zrelay.errors import FrameError


class TestParseCrossing:
    """Inbound crossing frames."""

    def test_valid_crossing(self) -> None:
        """A well-formed frame becomes a CrossingEvent with the origin filled in."""
        event = m.parse_crossing(m.crossing(1, b"\x00item\xff"), origin=7)
        assert event.origin == 7
        assert event.seq == 1
        assert event.payload == b"\x00item\xff"
        assert event.channel == m.DEFAULT_CHANNEL

    def test_channel_carried(self) -> None:
        """An explicit channel survives parsing."""
        event = m.parse_crossing(m.crossing(3, b"x", channel="liquids"), origin=1)
        assert event.channel == "liquids"

    @pytest.mark.parametrize("seq", ["1", 1.5, None, True])
    def test_bad_seq_type(self, seq) -> None:
        """Sequence numbers must be real integers (not bools, floats or strings)."""
        with pytest.raises(FrameError):
            m.parse_crossing({"type": "crossing", "seq": seq, "payload": ""}, origin=1)

    def test_missing_payload(self) -> None:
        """The payload field is required."""
        with pytest.raises(FrameError):
            m.parse_crossing({"type": "crossing", "seq": 1}, origin=1)

    def test_bad_base64(self) -> None:
        """Payloads must be base64url."""
        with pytest.raises(FrameError, match="base64"):
            m.parse_crossing({"type": "crossing", "seq": 1, "payload": "a"}, origin=1)

    def test_junk_in_payload(self) -> None:
        """Stray characters in a payload are rejected, not dropped."""
        with pytest.raises(FrameError, match="base64"):
            m.parse_crossing({"type": "crossing", "seq": 1, "payload": "!!!!"}, origin=1)

    def test_junk_in_auth_hash(self) -> None:
        with pytest.raises(FrameError, match="base64url"):
            m.parse_auth({"type": "auth", "hash": "ab!cd*"})

    def test_payload_too_large(self) -> None:
        """Payloads over the limit are rejected."""
        msg = {"type": "crossing", "seq": 1, "payload": b64url_encode(b"x" * 101)}
        with pytest.raises(FrameError, match="too"):
            m.parse_crossing(msg, origin=1, max_payload=100)

    def test_payload_at_limit(self) -> None:
        """Exactly max_payload bytes is fine."""
        msg = {"type": "crossing", "seq": 1, "payload": b64url_encode(b"x" * 100)}
        assert len(m.parse_crossing(msg, origin=1, max_payload=100).payload) == 100

    def test_channel_too_long(self) -> None:
        """Channel names are bounded."""
        msg = m.crossing(1, b"x", channel="c" * (m.MAX_CHANNEL_LENGTH + 1))
        with pytest.raises(FrameError):
            m.parse_crossing(msg, origin=1)


class TestBuilders:
    """Outbound messages."""

    def test_relayed_keeps_payload(self) -> None:
        """The relayed frame carries the payload unchanged plus the origin."""
        event = m.CrossingEvent(origin=2, seq=5, payload=b"opaque", channel="c", received_at=12.5)
        msg = m.relayed(event)
        assert msg == {
            "type": "crossing",
            "origin": 2,
            "seq": 5,
            "channel": "c",
            "payload": b64url_encode(b"opaque"),
            "ts": 12500,
        }

    def test_scalar_cookie_echoed(self) -> None:
        """Scalar cookies come back on responses."""
        assert m.pong(42)["cookie"] == 42
        assert m.pong("abc")["cookie"] == "abc"

    @pytest.mark.parametrize("cookie", [None, {"a": 1}, [1, 2]])
    def test_structured_cookie_dropped(self, cookie) -> None:
        """Null, object and array cookies are not echoed."""
        assert "cookie" not in m.pong(cookie)

    def test_crossed_ack(self) -> None:
        """Acks name the sequence and how many peers got it."""
        event = m.CrossingEvent(origin=1, seq=9, payload=b"")
        assert m.crossed(event, 3, cookie=1) == {
            "type": "crossed", "seq": 9, "channel": "", "delivered": 3, "cookie": 1,
        }

    def test_parse_auth_rejects_non_string(self) -> None:
        """The auth hash must be a base64url string."""
        with pytest.raises(FrameError):
            m.parse_auth({"type": "auth", "hash": 123})
