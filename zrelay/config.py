"""
config.py — server settings and shared-secret resolution.

Everything here runs once at startup. Problems surface as ConfigError so the
entry point can print one clear line and exit instead of limping along.

Environment:
    ZRELAY_SECRET       passphrase, used when no --secret/--secret-file is given
    ZRELAY_SECRET_FILE  path to a secret file, same fallback rule
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .crypto import SharedSecret
from .errors import ConfigError
from .framing import COMPRESS_THRESHOLD, MAX_FRAME_SIZE
from .messages import MAX_PAYLOAD_SIZE

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5496
ENV_SECRET = "ZRELAY_SECRET"
ENV_SECRET_FILE = "ZRELAY_SECRET_FILE"
# Room for the JSON wrapper around a base64'd payload in a relayed frame.
FRAME_OVERHEAD = 512


@dataclass
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    secret_passphrase: Optional[str] = None
    secret_file: Optional[str] = None
    auth_enabled: bool = True
    auth_timeout: float = 10.0
    ping_interval: Optional[float] = None
    stats_interval: Optional[float] = None
    max_frame_size: int = MAX_FRAME_SIZE
    compress_threshold: int = COMPRESS_THRESHOLD
    max_payload: int = MAX_PAYLOAD_SIZE
    outbound_limit: int = 256
    send_timeout: float = 5.0
    shutdown_grace: float = 5.0
    verbosity: int = 0

    def validate(self) -> "ServerConfig":
        """Raise ConfigError on values the server can't run with."""
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"Invalid port {self.port}")
        if self.secret_passphrase is not None and self.secret_file is not None:
            raise ConfigError("Give either a secret passphrase or a secret file, not both")
        if self.ping_interval is not None and not 0 < self.ping_interval < 999:
            raise ConfigError("Invalid ping interval, should be between 1 and 999")
        if self.stats_interval is not None and self.stats_interval <= 0:
            raise ConfigError("Stats interval must be positive")
        for name in ("auth_timeout", "send_timeout", "shutdown_grace"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.outbound_limit < 1:
            raise ConfigError("outbound_limit must be at least 1")
        if self.max_payload < 1:
            raise ConfigError("max_payload must be at least 1")
        if (self.max_payload + 2) * 4 // 3 + FRAME_OVERHEAD > self.max_frame_size:
            raise ConfigError("max_frame_size is too small for max_payload")
        return self

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Fill the secret source from the environment if none was given."""
        env = os.environ if environ is None else environ
        if self.secret_passphrase is None and self.secret_file is None:
            if env.get(ENV_SECRET):
                self.secret_passphrase = env[ENV_SECRET]
            elif env.get(ENV_SECRET_FILE):
                self.secret_file = env[ENV_SECRET_FILE]
        return self


def parse_address(value: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    """'host:port', ':port', 'host' or '[v6]:port' -> (host, port)."""
    host, sep, port = value.rpartition(":")
    if not sep or "]" in port:
        host, port = value, str(default_port)
    host = host.strip("[]") or DEFAULT_HOST
    try:
        return host, int(port)
    except ValueError:
        raise ConfigError(f"Invalid address {value!r}, expected ADDR:PORT") from None


def load_shared_secret(config: ServerConfig) -> Optional[SharedSecret]:
    """
    Resolve the configured secret source. Returns None when authentication is
    off, either explicitly or because no secret was supplied.

    Raises:
        ConfigError: unreadable or empty secret.
    """
    if not config.auth_enabled:
        logger.warning("Authentication disabled; every peer is trusted")
        return None
    if config.secret_file is not None:
        return SharedSecret.from_file(config.secret_file)
    if config.secret_passphrase is not None:
        return SharedSecret.from_passphrase(config.secret_passphrase)
    logger.warning("No shared secret configured; every peer is trusted")
    return None
