"""
crypto.py — shared-secret key derivation and the challenge/response hash.

Why this exists:
- Keep all of the secret handling in one place so sessions only ever call
  `response_for()` / `verify()` and never touch the raw secret.
- Use URL-safe Base64 without '=' padding so binary values drop cleanly into
  JSON frames.

Notes:
- The operator's secret (a passphrase or an arbitrary file's bytes) is run
  through HKDF-SHA256 once at startup; only the derived 32-byte key is kept.
- The handshake response is SHA-256(nonce || key). Peers derive the same key
  from the same secret, so the secret itself never crosses the wire.
"""

import base64
import binascii
import hmac
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import ConfigError

NONCE_SIZE = 32
KEY_SIZE = 32
KDF_INFO = b"zrelay shared secret v1"

# -----------------------------
# Base64 URL helpers (no padding)
# -----------------------------

def b64url_encode(data: bytes) -> str:
    """URL-safe Base64 without '=' padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode our URL-safe, no-padding Base64 back to bytes.

    Raises:
        ValueError: if `data` is not valid base64url.
    """
    if "+" in data or "/" in data:
        raise ValueError("invalid base64url: standard base64 characters")
    # Add the minimal padding back so Python's decoder is happy.
    pad_len = (-len(data)) % 4
    try:
        # validate=True: anything outside the alphabet is an error, not skipped.
        return base64.b64decode((data + "=" * pad_len).encode("ascii"), altchars=b"-_", validate=True)
    except (UnicodeEncodeError, binascii.Error) as exc:
        raise ValueError(f"invalid base64url: {exc}") from exc


# -------------
# Key derivation
# -------------

def derive_key(secret: bytes) -> bytes:
    """HKDF-SHA256 over the raw secret bytes -> 32-byte key."""
    if not secret:
        raise ConfigError("Can't authenticate using an empty secret")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=KDF_INFO,
    )
    return hkdf.derive(secret)


def new_nonce() -> bytes:
    """Fresh random challenge for one handshake."""
    return os.urandom(NONCE_SIZE)


def compute_response(key: bytes, nonce: bytes) -> bytes:
    """The value a peer must send back: SHA-256(nonce || key)."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(nonce)
    digest.update(key)
    return digest.finalize()


@dataclass(frozen=True)
class SharedSecret:
    """
    Process-wide, read-only handshake key.

    Build it once at startup with one of the `from_*` constructors and pass the
    same instance to every session. The key is left out of repr() so it can't
    end up in a log line by accident.
    """
    key: bytes = field(repr=False)

    @classmethod
    def from_bytes(cls, secret: bytes) -> "SharedSecret":
        return cls(key=derive_key(secret))

    @classmethod
    def from_passphrase(cls, passphrase: str) -> "SharedSecret":
        return cls.from_bytes(passphrase.encode("utf-8"))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SharedSecret":
        """Use an arbitrary file's bytes as the secret."""
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise ConfigError(f"Unable to read secret file {path}: {exc}") from exc
        return cls.from_bytes(data)

    def response_for(self, nonce: bytes) -> bytes:
        return compute_response(self.key, nonce)

    def verify(self, nonce: bytes, response: bytes) -> bool:
        """
        Constant-time check of a peer's response to `nonce`.
        Returns False for anything else, including a valid response to a
        different nonce.
        """
        expected = self.response_for(nonce)
        return hmac.compare_digest(expected, response)
