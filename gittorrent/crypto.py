"""
Node Keys - Ed25519 via PyNaCl
==============================

[SECURITY] The long-term keypair signs the repository directory that the
daemon publishes. Its public key is the identity consumers put into
``gittorrent://`` URLs (as the SHA-1 DHT target derived from it).

[PERSISTENCE] Key file format (JSON, hex encoded)::

    {"pub": "<64 hex>", "priv": "<64 hex seed>"}

The file is created on first run with owner-only permissions (0600).
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

from nacl.signing import SigningKey, VerifyKey
from nacl.encoding import HexEncoder, RawEncoder
from nacl.exceptions import BadSignatureError, CryptoError

from .errors import ConfigOrKeyError

logger = logging.getLogger(__name__)


KEY_FILE_MODE = 0o600
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64


def bpad(n: int, buf: bytes) -> bytes:
    """
    Zero-pad ``buf`` on the left to exactly ``n`` bytes.

    Raises:
        ValueError: ``buf`` is longer than ``n``
    """
    if len(buf) > n:
        raise ValueError(f"Buffer of {len(buf)} bytes does not fit into {n}")
    return b"\x00" * (n - len(buf)) + buf


class KeyPair:
    """
    Ed25519 keypair of a publishing node.

    [SECURITY] Signatures are 64 bytes: 32 byte R followed by 32 byte S,
    which is the layout the DHT record expects.
    """

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self.signing_key: SigningKey = signing_key or SigningKey.generate()
        self.verify_key: VerifyKey = self.signing_key.verify_key

    @property
    def public_key(self) -> bytes:
        return bpad(PUBLIC_KEY_SIZE, self.verify_key.encode(encoder=RawEncoder))

    @property
    def public_hex(self) -> str:
        return self.public_key.hex()

    def sign(self, data: bytes) -> bytes:
        signature = self.signing_key.sign(data, encoder=RawEncoder).signature
        return bpad(SIGNATURE_SIZE, signature)

    @staticmethod
    def verify(public_key: bytes, data: bytes, signature: bytes) -> bool:
        """Check a detached signature against a raw public key."""
        try:
            VerifyKey(public_key).verify(data, signature)
            return True
        except (BadSignatureError, CryptoError, ValueError, TypeError):
            return False

    def to_dict(self) -> Dict[str, str]:
        return {
            "pub": self.verify_key.encode(encoder=HexEncoder).decode("ascii"),
            "priv": self.signing_key.encode(encoder=HexEncoder).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "KeyPair":
        """
        Restore a keypair from its key file form.

        Raises:
            ConfigOrKeyError: Missing fields, bad hex, or pub not matching priv
        """
        try:
            signing_key = SigningKey(data["priv"].encode("ascii"), encoder=HexEncoder)
        except (KeyError, AttributeError, TypeError, ValueError, CryptoError) as e:
            raise ConfigOrKeyError(f"Invalid private key: {e}") from e

        keypair = cls(signing_key)
        expected = str(data.get("pub", "")).lower()
        if expected and expected != keypair.public_hex:
            raise ConfigOrKeyError("Public key in key file does not match private key")
        return keypair

    @classmethod
    def load_or_create(cls, path: Union[str, Path]) -> "KeyPair":
        """
        Load the keypair at ``path``, generating it on first run.

        Raises:
            ConfigOrKeyError: Key file cannot be created or parsed
        """
        path = Path(path)
        if not path.exists():
            keypair = cls()
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, KEY_FILE_MODE)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(keypair.to_dict(), f)
                # umask may have stripped bits, make it explicit
                os.chmod(path, KEY_FILE_MODE)
            except OSError as e:
                raise ConfigOrKeyError(f"Cannot create key file {path}: {e}") from e
            logger.info(f"[CRYPTO] Created key file: {path}")

        logger.info(f"[CRYPTO] Loading key file: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigOrKeyError(f"Cannot read key file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigOrKeyError(f"Key file {path} must contain a JSON object")
        return cls.from_dict(data)
