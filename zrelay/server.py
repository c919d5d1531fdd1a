import asyncio
import itertools
import logging
from typing import Any, Dict, Optional, Set, Tuple

from .config import ServerConfig
from .crypto import SharedSecret
from .errors import ConfigError
from .events import NotificationKind, Notifier
from .registry import SessionRegistry
from .relay import RelayEngine
from .session import Session, Trigger

"""
server.py — the TCP listener that owns sessions, the registry and the relay.

What lives here:
- Binding the listener (failures become ConfigError, fatal at startup).
- One task per accepted connection, each running `Session.run()`.
- Orderly shutdown: stop accepting, tell every live session to close with a
  reason, wait for them, then report.

The server holds no per-event logic; that's the session's and relay's job.
"""

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "server shutting down"


class RelayServer:
    """
    Crossing relay server.

    Typical usage:
        server = RelayServer(config, load_shared_secret(config), notifier)
        await server.start()
        await server.serve_forever()   # until shutdown() is called
    """

    def __init__(
        self,
        config: ServerConfig,
        secret: Optional[SharedSecret] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.config = config
        self.secret = secret
        self.notifier = notifier or Notifier()
        self.registry = SessionRegistry()
        self.relay = RelayEngine(self.registry, self.notifier)

        self._server: Optional[asyncio.AbstractServer] = None
        self._ids = itertools.count(1)
        # Every live connection, handshaking or Active (the registry only has Active ones).
        self._sessions: Dict[int, Session] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._stopped = asyncio.Event()
        self.sessions_opened = 0

    @property
    def address(self) -> Tuple[str, int]:
        """The (host, port) actually bound; useful when port 0 was requested."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not listening")
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    @property
    def is_closing(self) -> bool:
        return self._closing

    async def start(self) -> None:
        """Bind the listener. Raises ConfigError if the address can't be used."""
        try:
            self._server = await asyncio.start_server(self.handle_conn, self.config.host, self.config.port)
        except OSError as exc:
            raise ConfigError(
                f"Unable to bind {self.config.host}:{self.config.port}: {exc.strerror or exc}"
            ) from exc
        host, port = self.address
        logger.info("listening on %s:%d (auth %s)", host, port, "on" if self.secret else "off")
        self.notifier.emit(
            NotificationKind.LISTENING,
            peer=f"{host}:{port}",
            detail={"auth_required": self.secret is not None},
        )

    async def serve_forever(self) -> None:
        """Wait until shutdown() has finished."""
        if self._server is None:
            await self.start()
        await self._stopped.wait()

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """One accepted connection: build a Session and run it to completion."""
        if self._closing:
            writer.close()
            return

        session_id = next(self._ids)
        session = Session(
            session_id,
            reader,
            writer,
            self.config,
            self.secret,
            self.registry,
            self.relay,
            self.notifier,
        )
        self._sessions[session_id] = session
        self.sessions_opened += 1
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            await session.run()
        except Exception:
            # Session.run() handles per-connection errors itself; anything
            # arriving here is a bug, but it still must not reach the listener.
            logger.exception("session %d crashed", session_id)
            session.close(Trigger.TRANSPORT_ERROR, "internal error")
            await session.wait_closed()
        finally:
            self._sessions.pop(session_id, None)
            if task is not None:
                self._tasks.discard(task)

    async def shutdown(self, reason: str = SHUTDOWN_REASON) -> None:
        """
        Stop accepting, close every live session with `reason`, and wait
        (up to `shutdown_grace`) for their tasks. Safe to call twice.
        """
        if self._closing:
            await self._stopped.wait()
            return
        self._closing = True

        if self._server is not None:
            self._server.close()

        live = list(self._sessions.values())
        for session in live:
            session.close(Trigger.SHUTDOWN, reason)

        pending = list(self._tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.config.shutdown_grace)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()

        self.notifier.emit(NotificationKind.SHUTDOWN, reason=reason, detail={"closed": len(live)})
        self._stopped.set()

    def stats(self) -> Dict[str, Any]:
        """Counters for the operator's periodic report."""
        out = {
            "active": len(self.registry),
            "connections": len(self._sessions),
            "sessions_opened": self.sessions_opened,
        }
        out.update(self.relay.stats.as_dict())
        return out
