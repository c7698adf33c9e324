"""
Mutable DHT Record (BEP 44)
===========================

[DHT] Layout of a signed mutable item:

| Field      | Size   | Description                                  |
|------------|--------|----------------------------------------------|
| k          | 32     | Ed25519 public key, zero-left-padded         |
| seq        | int    | Sequence number, always 0 in this system     |
| v          | <=950  | Payload (encoded repository directory)       |
| sig        | 64     | 32 byte r || 32 byte s, zero-left-padded     |

The record lives under ``target = sha1(k)`` (no salt). The signed bytes are
the bencoded ``seq`` and ``v`` fields: ``3:seqi<seq>e1:v<len>:<v>``.
"""

import hashlib
from dataclasses import dataclass

from ..crypto import KeyPair, PUBLIC_KEY_SIZE, SIGNATURE_SIZE, bpad


MAX_VALUE_SIZE = 1000  # BEP 44 limit on the bencoded value


def target_for(public_key: bytes) -> bytes:
    """DHT target (20 bytes) under which a public key's record lives."""
    return hashlib.sha1(public_key).digest()


def signing_data(seq: int, value: bytes) -> bytes:
    return b"3:seqi%de1:v%d:" % (seq, len(value)) + value


@dataclass
class SignedRecord:
    """Signed mutable DHT item."""

    public_key: bytes
    seq: int
    value: bytes
    signature: bytes

    @property
    def target(self) -> bytes:
        return target_for(self.public_key)

    @property
    def target_hex(self) -> str:
        return self.target.hex()

    @property
    def well_formed(self) -> bool:
        """Key and signature have the sizes the wire format requires."""
        return (
            len(self.public_key) == PUBLIC_KEY_SIZE
            and len(self.signature) == SIGNATURE_SIZE
            and self.seq >= 0
        )

    def verify(self) -> bool:
        if not self.well_formed:
            return False
        return KeyPair.verify(self.public_key, signing_data(self.seq, self.value), self.signature)

    @classmethod
    def create(cls, keypair: KeyPair, value: bytes, seq: int = 0) -> "SignedRecord":
        return cls(
            public_key=bpad(PUBLIC_KEY_SIZE, keypair.public_key),
            seq=seq,
            value=value,
            signature=keypair.sign(signing_data(seq, value)),
        )
