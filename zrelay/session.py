"""
session.py — one peer connection: handshake, sequencing, and teardown.

Lifecycle:
    CONNECTED --challenge sent--> AUTHENTICATING --valid response--> ACTIVE
    any non-terminal state --error / EOF / shutdown--> CLOSED

The state lives in a single `SessionState` value and only changes through
`transition()`, a pure lookup in TRANSITIONS that also says which side effects
(registry update, notification, resource release) the move implies. `Session`
executes those effects; nothing else flips the state.

Every per-connection error is caught in `Session.run()` and becomes a close
with a reason. None of them escape to the server or to other sessions.
"""

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Tuple

from . import messages as m
from .config import ServerConfig
from .crypto import SharedSecret, new_nonce
from .errors import AuthError, FrameError, SequenceError, SessionStateError, TransportError
from .events import NotificationKind, Notifier
from .framing import FrameDecoder, FrameReader, write_frame
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSED = "closed"


class Trigger(enum.Enum):
    HANDSHAKE_BEGUN = "handshake_begun"
    AUTH_SUCCEEDED = "auth_succeeded"
    AUTH_SKIPPED = "auth_skipped"
    AUTH_FAILED = "auth_failed"
    AUTH_TIMEOUT = "auth_timeout"
    FRAME_ERROR = "frame_error"
    PROTOCOL_VIOLATION = "protocol_violation"
    TRANSPORT_ERROR = "transport_error"
    PEER_CLOSED = "peer_closed"
    SHUTDOWN = "shutdown"


class Effect(enum.Enum):
    REGISTER = "register"
    NOTIFY_AUTHENTICATED = "notify_authenticated"
    DEREGISTER = "deregister"
    RELEASE = "release"
    NOTIFY_CLOSED = "notify_closed"


# Triggers that mean something went wrong (reported as ERROR before CLOSED).
ERROR_TRIGGERS = frozenset({
    Trigger.AUTH_FAILED,
    Trigger.AUTH_TIMEOUT,
    Trigger.FRAME_ERROR,
    Trigger.PROTOCOL_VIOLATION,
    Trigger.TRANSPORT_ERROR,
})

_ALWAYS_CLOSE = (Trigger.FRAME_ERROR, Trigger.TRANSPORT_ERROR, Trigger.PEER_CLOSED, Trigger.SHUTDOWN)

TRANSITIONS: Dict[Tuple[SessionState, Trigger], SessionState] = {
    (SessionState.CONNECTED, Trigger.HANDSHAKE_BEGUN): SessionState.AUTHENTICATING,
    (SessionState.AUTHENTICATING, Trigger.AUTH_SUCCEEDED): SessionState.ACTIVE,
    (SessionState.AUTHENTICATING, Trigger.AUTH_SKIPPED): SessionState.ACTIVE,
    (SessionState.AUTHENTICATING, Trigger.AUTH_FAILED): SessionState.CLOSED,
    (SessionState.AUTHENTICATING, Trigger.AUTH_TIMEOUT): SessionState.CLOSED,
    (SessionState.ACTIVE, Trigger.PROTOCOL_VIOLATION): SessionState.CLOSED,
}
for _state in (SessionState.CONNECTED, SessionState.AUTHENTICATING, SessionState.ACTIVE):
    for _trigger in _ALWAYS_CLOSE:
        TRANSITIONS[(_state, _trigger)] = SessionState.CLOSED

ENTRY_EFFECTS: Dict[SessionState, Tuple[Effect, ...]] = {
    SessionState.ACTIVE: (Effect.REGISTER, Effect.NOTIFY_AUTHENTICATED),
    SessionState.CLOSED: (Effect.DEREGISTER, Effect.RELEASE, Effect.NOTIFY_CLOSED),
}


@dataclass(frozen=True)
class Transition:
    state: SessionState
    effects: Tuple[Effect, ...] = ()


def transition(state: SessionState, trigger: Trigger) -> Transition:
    """
    Next state and side effects for `trigger` in `state`.

    CLOSED is terminal: every trigger there is a no-op with no effects.

    Raises:
        SessionStateError: the trigger can't happen in `state`.
    """
    if state is SessionState.CLOSED:
        return Transition(SessionState.CLOSED)
    try:
        nxt = TRANSITIONS[(state, trigger)]
    except KeyError:
        raise SessionStateError(f"{trigger.value} is not valid in state {state.value}") from None
    return Transition(nxt, ENTRY_EFFECTS.get(nxt, ()))


class SequenceTracker:
    """
    Last accepted sequence number per logical channel.

    Numbering starts at 1 on every channel and each next number must be exactly
    one more than the last. Repeats, gaps and rewinds are all protocol errors.
    """

    def __init__(self) -> None:
        self._last: Dict[str, int] = {}

    def last(self, channel: str = m.DEFAULT_CHANNEL) -> int:
        return self._last.get(channel, 0)

    def expected(self, channel: str = m.DEFAULT_CHANNEL) -> int:
        return self.last(channel) + 1

    def advance(self, channel: str, seq: int) -> None:
        expected = self.expected(channel)
        if seq != expected:
            what = "repeated" if seq < expected else "skipped ahead"
            raise SequenceError(
                f"Sequence number {seq} on channel {channel!r} {what} (expected {expected})"
            )
        self._last[channel] = seq


def format_peer(peername: Any) -> str:
    if isinstance(peername, tuple) and len(peername) >= 2:
        host, port = peername[0], peername[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(peername)


class Session:
    """
    Server side of one peer connection.

    Other code talks to a session through three methods only:
      - run():      owned by the server's connection task
      - deliver():  the relay engine (and the session itself) queue a frame
      - close():    anyone; idempotent
    """

    def __init__(
        self,
        session_id: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: ServerConfig,
        secret: Optional[SharedSecret],
        registry: SessionRegistry,
        relay,
        notifier: Notifier,
    ) -> None:
        self.session_id = session_id
        self.reader = reader
        self.writer = writer
        self.config = config
        self.secret = secret
        self.registry = registry
        self.relay = relay
        self.notifier = notifier
        self.peer = format_peer(writer.get_extra_info("peername"))

        self.state = SessionState.CONNECTED
        self.nonce: Optional[bytes] = None
        self.sequences = SequenceTracker()
        self.close_trigger: Optional[Trigger] = None
        self.close_reason: Optional[str] = None

        self.frames = FrameReader(reader, FrameDecoder(config.max_frame_size))
        self.outbound: asyncio.Queue = asyncio.Queue(maxsize=config.outbound_limit)
        self._backlog: Deque[Dict[str, Any]] = deque()
        self._backlog_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._release_task: Optional[asyncio.Task] = None
        self._released = asyncio.Event()

        self.frames_in = 0
        self.frames_out = 0
        self.events_accepted = 0

    def __repr__(self) -> str:
        return f"<Session {self.session_id} {self.peer} {self.state.value}>"

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def info(self) -> Dict[str, Any]:
        return {
            "session": self.session_id,
            "peer": self.peer,
            "state": self.state.value,
            "frames_in": self.frames_in,
            "frames_out": self.frames_out,
            "events_accepted": self.events_accepted,
            "queued": self.outbound.qsize() + len(self._backlog),
        }

    # -------------------------
    # State changes
    # -------------------------

    def _apply(self, trigger: Trigger) -> Transition:
        step = transition(self.state, trigger)
        self.state = step.state
        for effect in step.effects:
            self._run_effect(effect, trigger)
        return step

    def _run_effect(self, effect: Effect, trigger: Trigger) -> None:
        if effect is Effect.REGISTER:
            self.registry.add(self)
        elif effect is Effect.NOTIFY_AUTHENTICATED:
            self.notifier.emit(
                NotificationKind.SESSION_AUTHENTICATED,
                session_id=self.session_id,
                peer=self.peer,
                detail={"auth_required": self.secret is not None},
            )
        elif effect is Effect.DEREGISTER:
            self.registry.remove(self.session_id)
        elif effect is Effect.RELEASE:
            self.nonce = None
            self._release_task = asyncio.get_running_loop().create_task(self._release())
        elif effect is Effect.NOTIFY_CLOSED:
            if trigger in ERROR_TRIGGERS:
                self.notifier.emit(
                    NotificationKind.ERROR,
                    session_id=self.session_id,
                    peer=self.peer,
                    reason=self.close_reason,
                    detail={"trigger": trigger.value},
                )
            self.notifier.emit(
                NotificationKind.SESSION_CLOSED,
                session_id=self.session_id,
                peer=self.peer,
                reason=self.close_reason,
                detail={"trigger": trigger.value, "events_accepted": self.events_accepted},
            )

    def close(self, trigger: Trigger, reason: str) -> bool:
        """
        Move to CLOSED (deregister, notify, schedule socket release).
        Returns False if the session was already closed.
        """
        if self.state is SessionState.CLOSED:
            return False
        self.close_trigger = trigger
        self.close_reason = reason
        self._apply(trigger)
        return True

    async def wait_closed(self) -> None:
        await self._released.wait()

    # -------------------------
    # Connection task
    # -------------------------

    async def run(self) -> None:
        """Drive the whole connection. Returns once the socket is released."""
        self.notifier.emit(NotificationKind.SESSION_OPENED, session_id=self.session_id, peer=self.peer)
        try:
            if await self._handshake():
                self._start_active_tasks()
                await self._read_loop()
            self.close(Trigger.PEER_CLOSED, "peer disconnected")
        except FrameError as exc:
            self.close(Trigger.FRAME_ERROR, str(exc))
        except AuthError as exc:
            if not exc.timed_out:
                await self._send_best_effort(m.auth_bad("authentication failed"))
            self.close(Trigger.AUTH_TIMEOUT if exc.timed_out else Trigger.AUTH_FAILED, str(exc))
        except SequenceError as exc:
            self.close(Trigger.PROTOCOL_VIOLATION, str(exc))
        except (TransportError, ConnectionError, OSError) as exc:
            self.close(Trigger.TRANSPORT_ERROR, str(exc) or exc.__class__.__name__)
        except asyncio.CancelledError:
            self.close(Trigger.SHUTDOWN, "connection task cancelled")
            raise
        finally:
            if self._release_task is not None:
                await self._release_task

    async def _handshake(self) -> bool:
        """
        Authenticate the peer. Returns True once ACTIVE, False if the peer went
        away first (or the session was closed under us).
        """
        if self.secret is None:
            # Permissive mode: nothing to prove, no challenge on the wire.
            self._apply(Trigger.HANDSHAKE_BEGUN)
            self._apply(Trigger.AUTH_SKIPPED)
        else:
            self.nonce = new_nonce()
            await self._send_now(m.challenge(self.nonce))
            if self.state is not SessionState.CONNECTED:
                return False
            self._apply(Trigger.HANDSHAKE_BEGUN)

            try:
                msg = await asyncio.wait_for(self.frames.read(), self.config.auth_timeout)
            except asyncio.TimeoutError:
                raise AuthError("timed out waiting for challenge response", timed_out=True) from None
            if msg is None or self.state is not SessionState.AUTHENTICATING:
                return False
            self.frames_in += 1
            if msg["type"] != m.AUTH:
                raise FrameError(f"Received a non-auth message type during auth: {msg['type']!r}")

            response = m.parse_auth(msg)
            # One attempt per connection: the nonce is spent either way.
            nonce, self.nonce = self.nonce, None
            if not self.secret.verify(nonce, response):
                raise AuthError("AUTHENTICATION FAILED")
            self._apply(Trigger.AUTH_SUCCEEDED)

        await self._send_now(m.auth_ok(self.session_id))
        return self.state is SessionState.ACTIVE

    def _start_active_tasks(self) -> None:
        loop = asyncio.get_running_loop()
        self._writer_task = loop.create_task(self._write_loop())
        if self.config.ping_interval:
            self._ping_task = loop.create_task(self._ping_loop(self.config.ping_interval))

    async def _read_loop(self) -> None:
        while self.state is SessionState.ACTIVE:
            msg = await self.frames.read()
            if msg is None:
                return
            self.frames_in += 1
            logger.debug("%s → %s", self.peer, msg)
            self._dispatch(msg)

    def _dispatch(self, msg: Dict[str, Any]) -> None:
        mt = msg["type"]
        cookie = msg.get("cookie")

        if mt == m.CROSSING:
            event = m.parse_crossing(msg, self.session_id, self.config.max_payload)
            # Validate before relaying: a bad number must never reach anyone.
            self.sequences.advance(event.channel, event.seq)
            delivered = self.relay.accept(event)
            self.events_accepted += 1
            self.deliver(m.crossed(event, delivered, cookie))
        elif mt == m.PING:
            self.deliver(m.pong(cookie))
        elif mt == m.PONG:
            pass
        else:
            raise FrameError(f"Received a message with unknown type: {mt!r}")

    # -------------------------
    # Outbound path
    # -------------------------

    def deliver(self, msg: Dict[str, Any]) -> bool:
        """
        Queue a frame for this peer without blocking the caller.

        Returns False (frame dropped) unless the session is ACTIVE. When the
        outbound queue is full the frame waits in an ordered backlog; if the
        queue stays full for `send_timeout` the session is closed.
        """
        if self.state is not SessionState.ACTIVE:
            return False
        if not self._backlog:
            try:
                self.outbound.put_nowait(msg)
                return True
            except asyncio.QueueFull:
                pass
        self._backlog.append(msg)
        if self._backlog_task is None or self._backlog_task.done():
            self._backlog_task = asyncio.get_running_loop().create_task(self._drain_backlog())
        return True

    async def _drain_backlog(self) -> None:
        while self._backlog and self.state is SessionState.ACTIVE:
            try:
                await asyncio.wait_for(self.outbound.put(self._backlog[0]), self.config.send_timeout)
            except asyncio.TimeoutError:
                self.close(Trigger.TRANSPORT_ERROR, "outbound buffer saturated")
                return
            self._backlog.popleft()

    async def _write_loop(self) -> None:
        try:
            while True:
                msg = await self.outbound.get()
                await self._send_now(msg)
        except (FrameError, ConnectionError, OSError) as exc:
            self.close(Trigger.TRANSPORT_ERROR, f"write failed: {exc}")

    async def _ping_loop(self, interval: float) -> None:
        while self.state is SessionState.ACTIVE:
            await asyncio.sleep(interval)
            self.deliver(m.ping())

    async def _send_now(self, msg: Dict[str, Any]) -> None:
        await write_frame(self.writer, msg, self.config.compress_threshold, self.config.max_frame_size)
        self.frames_out += 1
        logger.debug("%s ← %s", self.peer, msg)

    async def _send_best_effort(self, msg: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(self._send_now(msg), self.config.send_timeout)
            return True
        except (asyncio.TimeoutError, FrameError, ConnectionError, OSError) as exc:
            logger.debug("%s: could not send %s: %s", self.peer, msg["type"], exc)
            return False

    async def _release(self) -> None:
        """Stop helper tasks, say goodbye if the peer is still there, drop the socket."""
        current = asyncio.current_task()
        helpers = [
            t for t in (self._ping_task, self._backlog_task, self._writer_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in helpers:
            task.cancel()
        await asyncio.gather(*helpers, return_exceptions=True)
        self._backlog.clear()

        flushed = True
        if self.close_trigger is not Trigger.PEER_CLOSED and not self.writer.is_closing():
            flushed = await self._send_best_effort(m.closing(self.close_reason or "closed"))

        if not flushed:
            # Peer isn't reading; don't wait on a buffer that will never drain.
            self.writer.transport.abort()
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), self.config.send_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError):
            pass
        self._released.set()
