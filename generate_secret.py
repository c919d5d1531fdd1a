import os
import sys
from pathlib import Path

from zrelay import SharedSecret
from zrelay.crypto import b64url_encode

# Quick one-off generator for a shared-secret file.
# - Copy the same file to the server and to every peer.
# - Any file works as a secret; this just makes a good random one.

SECRET_SIZE = 64


def write_secret(secret_path: Path) -> str:
    """Create `secret_path` (mode 0600, never overwriting) and return its fingerprint."""
    # O_EXCL: the existence check and the create are one step.
    try:
        fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        raise SystemExit(f"{secret_path} already exists; refusing to overwrite it") from None
    with os.fdopen(fd, "wb") as f:
        # 64 random bytes is plenty; HKDF squeezes it to a 32-byte key anyway.
        f.write(os.urandom(SECRET_SIZE))

    # Fingerprint = hash of the derived key, never the key, so operators can
    # check both ends loaded the same file.
    secret = SharedSecret.from_file(secret_path)
    return b64url_encode(secret.response_for(b"fingerprint"))[:16]


def main(argv=None) -> None:
    args = sys.argv[1:] if argv is None else argv
    secret_path = Path(args[0] if args else "zrelay_secret.bin")
    fingerprint = write_secret(secret_path)
    print(f"Wrote {secret_path}")
    print(f"Fingerprint: {fingerprint}")


if __name__ == "__main__":
    main()
