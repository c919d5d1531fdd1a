import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional, TextIO

from . import messages as m
from .config import DEFAULT_HOST, DEFAULT_PORT, ServerConfig, load_shared_secret, parse_address
from .crypto import SharedSecret, b64url_decode
from .errors import ConfigError, ZRelayError
from .events import Notification, NotificationKind, Notifier
from .peer import PeerClient
from .server import RelayServer

"""
run_server.py — single entry point for the relay and a simple test peer.

What you can do here:
- Server:  listen for peers and relay their crossings (default mode)
- Peer:    connect, authenticate, send a few crossings, print what arrives

This module is the only place that prints. The core emits notifications and
the Reporter below turns them into operator-readable lines.
"""


# -------------------------
# Operator output
# -------------------------

class Reporter:
    """Renders core notifications and keeps running totals for the stats line."""

    def __init__(self, verbosity: int = 0, out: Optional[TextIO] = None) -> None:
        self.verbosity = verbosity
        self.out = out or sys.stderr
        self.connected = 0
        self.authenticated = 0
        self.disconnected = 0
        self.errors = 0
        self.relayed = 0
        self.bytes_relayed = 0

    def write(self, line: str) -> None:
        print(line, file=self.out, flush=True)

    def __call__(self, note: Notification) -> None:
        kind = note.kind
        if kind is NotificationKind.LISTENING:
            auth = "required" if note.detail.get("auth_required") else "NOT required"
            self.write(f"Startup complete. Listening for connections on {note.peer} (authentication {auth}).")
        elif kind is NotificationKind.SESSION_OPENED:
            self.connected += 1
            self.write(f"{note.peer} CONNECTED")
        elif kind is NotificationKind.SESSION_AUTHENTICATED:
            self.authenticated += 1
            if note.detail.get("auth_required"):
                self.write(f"  {note.peer} AUTHENTICATED")
            else:
                self.write(f"  {note.peer} AUTHENTICATED (no auth needed)")
        elif kind is NotificationKind.ERROR:
            self.errors += 1
            self.write(f"  {note.peer} ERROR: {note.reason}")
        elif kind is NotificationKind.SESSION_CLOSED:
            self.disconnected += 1
            if note.detail.get("trigger") == "shutdown":
                self.write(f"  {note.peer} CLOSED ({note.reason})")
            else:
                self.write(f"  {note.peer} DISCONNECTED")
        elif kind is NotificationKind.EVENT_RELAYED:
            self.relayed += 1
            self.bytes_relayed += note.detail.get("size", 0)
            if self.verbosity >= 1:
                self.write(
                    f"  session {note.session_id} crossed #{note.detail['seq']}"
                    f" ({note.detail['size']} bytes) to {note.detail['delivered']} peer(s)"
                )
        elif kind is NotificationKind.SHUTDOWN:
            self.write(f"\n\nServer closing down... ({note.detail.get('closed', 0)} session(s) closed)")

    def stats_line(self, server: RelayServer) -> str:
        active = server.stats()["active"]
        return (
            f"[stats] active={active} connected={self.connected} authenticated={self.authenticated} "
            f"disconnected={self.disconnected} errors={self.errors} "
            f"relayed={self.relayed} bytes={self.bytes_relayed}"
        )

    async def report_every(self, interval: float, server: RelayServer) -> None:
        while True:
            await asyncio.sleep(interval)
            self.write(self.stats_line(server))


# -------------------------
# Process runners (thin wrappers)
# -------------------------

def install_shutdown_handlers(server: RelayServer) -> None:
    """SIGINT/SIGTERM -> graceful shutdown. Not every platform supports this."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(server.shutdown()))
        except (NotImplementedError, RuntimeError):
            # e.g. Windows: fall back to KeyboardInterrupt in main().
            pass


async def run_relay(config: ServerConfig, reporter: Reporter) -> RelayServer:
    """Start the server and serve until a shutdown signal arrives."""
    secret = load_shared_secret(config)
    notifier = Notifier()
    notifier.subscribe(reporter)
    server = RelayServer(config, secret, notifier)
    await server.start()
    install_shutdown_handlers(server)

    stats_task = None
    if config.stats_interval:
        stats_task = asyncio.ensure_future(reporter.report_every(config.stats_interval, server))
    try:
        await server.serve_forever()
    finally:
        if stats_task is not None:
            stats_task.cancel()
        if not server.is_closing:
            await server.shutdown()
        reporter.write(reporter.stats_line(server))
    return server


async def run_peer(host: str, port: int, secret: Optional[SharedSecret], payloads: List[str],
                   channel: str, listen: bool) -> None:
    """
    Connect as a peer, send each payload as a crossing and print the acks,
    then (optionally) print every crossing relayed to us until the server
    closes the connection.
    """
    async with PeerClient(host, port, secret) as peer:
        print(f"Connected to {host}:{port} as session {peer.session_id}")
        for text in payloads:
            seq = await peer.send_crossing(text.encode("utf-8"), channel=channel)
            ack = await peer.expect(m.CROSSED, m.CLOSING)
            if ack["type"] == m.CLOSING:
                print(f"[closing] {ack.get('reason')}")
                return
            print(f"[crossed] #{seq} delivered to {ack['delivered']} peer(s)")

        while listen:
            msg = await peer.recv()
            if msg is None:
                print("Server closed the connection")
                return
            if msg["type"] == m.CROSSING:
                payload = b64url_decode(msg["payload"])
                print(f"[crossing] from {msg['origin']} #{msg['seq']} {payload!r}")
            elif msg["type"] == m.CLOSING:
                print(f"[closing] {msg.get('reason')}")


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Quick examples:
      Server:  python -m zrelay.run_server --listen 0.0.0.0:5496 --secret-file secret.bin -v
      Peer:    python -m zrelay.run_server --mode peer --connect 127.0.0.1:5496 \
                   --secret-file secret.bin --send hello --send world --listen-after
    """
    p = argparse.ArgumentParser(
        description="Relay server connecting the two (or more) sides of a barrier.",
    )
    p.add_argument("--mode", choices=["server", "peer"], default="server")
    p.add_argument("-l", "--listen", default=f"{DEFAULT_HOST}:{DEFAULT_PORT}",
                   help="ADDR:PORT to listen on (default %(default)s)")
    p.add_argument("--connect", help="ADDR:PORT of the server (peer mode)")
    p.add_argument("--secret", help="shared secret passphrase")
    p.add_argument("-a", "--secret-file", help="file whose bytes are the shared secret")
    p.add_argument("--no-auth", action="store_true", help="accept every peer without a handshake")
    p.add_argument("-v", "--verbose", action="count", default=0,
                   help="print every relayed event; twice to also log every frame")
    p.add_argument("-p", "--ping-interval", type=float,
                   help="send a ping to each peer this often (seconds); helps with NAT routers")
    p.add_argument("--stats-interval", type=float, help="print statistics this often (seconds)")
    p.add_argument("--auth-timeout", type=float, default=10.0)
    p.add_argument("--max-payload", type=int, default=m.MAX_PAYLOAD_SIZE)
    p.add_argument("--send", action="append", default=[], help="payload to send (peer mode, repeatable)")
    p.add_argument("--channel", default=m.DEFAULT_CHANNEL, help="logical channel for --send")
    p.add_argument("--listen-after", action="store_true", help="keep printing relayed crossings (peer mode)")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    host, port = parse_address(args.listen)
    config = ServerConfig(
        host=host,
        port=port,
        secret_passphrase=args.secret,
        secret_file=args.secret_file,
        auth_enabled=not args.no_auth,
        auth_timeout=args.auth_timeout,
        ping_interval=args.ping_interval,
        stats_interval=args.stats_interval,
        max_payload=args.max_payload,
        verbosity=args.verbose,
    )
    return config.with_env().validate()


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose >= 2 else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    try:
        config = build_config(args)
        if args.mode == "server":
            print("\n\nServer starting up...", file=sys.stderr)
            asyncio.run(run_relay(config, Reporter(config.verbosity)))
        else:
            if not args.connect:
                raise SystemExit("--connect is required for peer mode")
            host, port = parse_address(args.connect)
            secret = None
            if args.secret_file:
                secret = SharedSecret.from_file(args.secret_file)
            elif args.secret:
                secret = SharedSecret.from_passphrase(args.secret)
            asyncio.run(run_peer(host, port, secret, args.send, args.channel, args.listen_after))
    except ConfigError as exc:
        raise SystemExit(f"Error! {exc}")
    except ZRelayError as exc:
        raise SystemExit(f"{exc.__class__.__name__}: {exc}")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
