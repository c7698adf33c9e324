"""
Repository Directory - codec, signed publisher, resolver
========================================================

[DIRECTORY] What a node serves, as published to the DHT::

    {"repositories": {"<repo>": {"<ref>": "<40 hex object id>", ...}, ...}}

Serialized as compact JSON. The whole payload must fit into 950 bytes or
the publish is refused before anything touches the network.

[TRUST] The resolver does not re-verify the signature. Trust comes from
the DHT key itself: the key is the hash of the publisher's public key.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Dict

from .crypto import KeyPair
from .dht.base import DHT
from .dht.record import SignedRecord
from .errors import DirectoryTooLarge, MalformedDirectory, DirectoryNotFound

logger = logging.getLogger(__name__)


MAX_DIRECTORY_SIZE = 950

OBJECT_ID_RE = re.compile(r"^[0-9a-f]{40}$")

# repository name -> ref name -> object id
RepositoryDirectory = Dict[str, Dict[str, str]]


def is_object_id(value: object) -> bool:
    return isinstance(value, str) and OBJECT_ID_RE.match(value) is not None


def encode_directory(directory: RepositoryDirectory) -> bytes:
    return json.dumps(
        {"repositories": directory},
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


def decode_directory(payload: bytes) -> RepositoryDirectory:
    """
    Decode a directory payload.

    Raises:
        MalformedDirectory: Not JSON, wrong shape, or a bad object id
    """
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedDirectory(f"Directory payload is not JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("repositories"), dict):
        raise MalformedDirectory("Directory payload has no 'repositories' object")

    directory: RepositoryDirectory = {}
    for name, refs in data["repositories"].items():
        if not isinstance(refs, dict):
            raise MalformedDirectory(f"Refs of repository '{name}' are not an object")
        for ref, sha in refs.items():
            if not is_object_id(sha):
                raise MalformedDirectory(f"Invalid object id for {name} {ref}: {sha!r}")
        directory[name] = dict(refs)
    return directory


@dataclass
class RecordHandle:
    """What a successful publish leaves behind."""

    target: bytes
    seq: int
    size: int

    @property
    def key(self) -> str:
        """40 hex characters, the key consumers put into gittorrent:// URLs."""
        return self.target.hex()


class DirectoryPublisher:
    """
    Signs and publishes the directory under the node's key.

    [DHT] Sequence number is always 0: every publish is an unconditional
    overwrite, there is no compare-and-swap.
    """

    SEQ = 0

    def __init__(self, dht: DHT, keypair: KeyPair):
        self.dht = dht
        self.keypair = keypair

    async def publish(self, directory: RepositoryDirectory) -> RecordHandle:
        """
        Raises:
            DirectoryTooLarge: Encoded directory exceeds 950 bytes (no DHT call made)
        """
        payload = encode_directory(directory)
        if len(payload) > MAX_DIRECTORY_SIZE:
            raise DirectoryTooLarge(len(payload), MAX_DIRECTORY_SIZE)

        record = SignedRecord.create(self.keypair, payload, seq=self.SEQ)
        target = await self.dht.put(record)

        logger.info(f"[DIRECTORY] Published {len(payload)} bytes under {target.hex()}")
        logger.debug(f"[DIRECTORY] {payload.decode('utf-8')}")
        return RecordHandle(target=target, seq=record.seq, size=len(payload))


class DirectoryResolver:
    """Looks up a published directory by its 40 hex key."""

    def __init__(self, dht: DHT):
        self.dht = dht

    async def resolve(self, key_hex: str) -> RepositoryDirectory:
        """
        Raises:
            DirectoryNotFound: Nothing stored under the key
            MalformedDirectory: Bad key, bad record shape, or undecodable payload
        """
        if not is_object_id(key_hex):
            raise MalformedDirectory(f"Invalid directory key: {key_hex!r}")

        record = await self.dht.get(bytes.fromhex(key_hex))
        if record is None:
            raise DirectoryNotFound(f"No directory under {key_hex}")
        if not record.well_formed:
            raise MalformedDirectory(f"Record under {key_hex} has a malformed key or signature")

        directory = decode_directory(record.value)
        logger.info(
            f"[DIRECTORY] Mutable key {key_hex} returned:\n"
            f"{json.dumps(directory, indent=2, sort_keys=True)}"
        )
        return directory

    async def resolve_repository(self, key_hex: str, name: str) -> Dict[str, str]:
        """
        Refs of one repository.

        Raises:
            DirectoryNotFound: Key unresolvable, malformed, or repository absent
        """
        try:
            directory = await self.resolve(key_hex)
        except MalformedDirectory as e:
            logger.error(f"[DIRECTORY] {e}")
            raise DirectoryNotFound(str(e)) from e

        if name not in directory:
            raise DirectoryNotFound(f"Repository '{name}' is not published under {key_hex}")
        return directory[name]
