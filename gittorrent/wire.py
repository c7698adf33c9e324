"""
Peer Wire Protocol
==================

Framed binary protocol between a fetching node and a serving node. It
carries a handshake and named extension messages, nothing else; bulk data
moves through the transfer engine.

Header layout (fixed, 8 bytes):
===============================

Format String: `>2sBBI` (Big-Endian)

| Field     | Type | Size | Description                           |
|-----------|------|------|---------------------------------------|
| Magic     | 2s   | 2    | b'GT' protocol marker                 |
| Version   | B    | 1    | protocol version, currently 1         |
| MsgType   | B    | 1    | WireMessageType enum value            |
| Length    | I    | 4    | payload size in bytes                 |

Payloads:
- HANDSHAKE: info_hash(20) + peer_id(20) + JSON {"m": [extension names], "p": transfer port}
- EXTENDED:  JSON {"ext": name, "msg": {...}}

[HANDSHAKE] The connecting side sends its handshake first. The accepting
side answers with its own handshake on receipt. Registered extensions are
told once the remote handshake has arrived.

[MIGRATION] Any frame without Magic b'GT' closes the connection.
"""

import asyncio
import json
import os
import struct
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# ============================================================================
# Protocol Constants
# ============================================================================

MAGIC = b'GT'
PROTOCOL_VERSION = 1
HEADER_FORMAT = '>2sBBI'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

MAX_PAYLOAD_SIZE = 1024 * 1024

INFO_HASH_SIZE = 20
PEER_ID_SIZE = 20
PEER_ID_PREFIX = b"-GT0100-"


class WireMessageType(IntEnum):
    """
    Message types.

    [WIRE] Values are stable, new types are appended.
    """

    HANDSHAKE = 0
    EXTENDED = 20


class WireError(Exception):
    """Wire protocol errors."""
    pass


class InvalidMagicError(WireError):
    """Bad magic, not our protocol."""
    pass


class InvalidVersionError(WireError):
    """Unsupported protocol version."""
    pass


class PayloadTooLargeError(WireError):
    """Payload over the size limit."""
    pass


def generate_peer_id() -> bytes:
    """20 byte peer id: client prefix plus random hex."""
    return PEER_ID_PREFIX + os.urandom((PEER_ID_SIZE - len(PEER_ID_PREFIX)) // 2).hex().encode("ascii")


# ============================================================================
# Framing
# ============================================================================

@dataclass
class WireHeader:
    """Message header, 8 bytes big-endian."""

    msg_type: int = 0
    length: int = 0
    magic: bytes = MAGIC
    version: int = PROTOCOL_VERSION

    def pack(self) -> bytes:
        return struct.pack(HEADER_FORMAT, self.magic, self.version, self.msg_type, self.length)

    @classmethod
    def unpack(cls, data: bytes) -> "WireHeader":
        """
        Raises:
            InvalidMagicError: bad magic
            InvalidVersionError: unsupported version
        """
        if len(data) < HEADER_SIZE:
            raise WireError(f"Header too short: {len(data)} < {HEADER_SIZE}")

        magic, version, msg_type, length = struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])

        if magic != MAGIC:
            raise InvalidMagicError(f"Invalid magic: {magic!r} != {MAGIC!r}")

        if version != PROTOCOL_VERSION:
            raise InvalidVersionError(f"Unsupported version: {version}")

        return cls(msg_type=msg_type, length=length, magic=magic, version=version)


def encode_frame(msg_type: WireMessageType, payload: bytes) -> bytes:
    """
    Raises:
        PayloadTooLargeError: payload over MAX_PAYLOAD_SIZE
    """
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise PayloadTooLargeError(f"Payload too large: {len(payload)} > {MAX_PAYLOAD_SIZE}")
    return WireHeader(msg_type=int(msg_type), length=len(payload)).pack() + payload


@dataclass
class Handshake:
    """Wire-level presence announcement."""

    info_hash: bytes
    peer_id: bytes
    extensions: List[str] = field(default_factory=list)
    transfer_port: int = 0

    def to_payload(self) -> bytes:
        if len(self.info_hash) != INFO_HASH_SIZE or len(self.peer_id) != PEER_ID_SIZE:
            raise WireError("Handshake needs a 20 byte info_hash and a 20 byte peer_id")
        extra = json.dumps({"m": self.extensions, "p": self.transfer_port}, separators=(",", ":"))
        return self.info_hash + self.peer_id + extra.encode("utf-8")

    @classmethod
    def from_payload(cls, payload: bytes) -> "Handshake":
        fixed = INFO_HASH_SIZE + PEER_ID_SIZE
        if len(payload) < fixed:
            raise WireError(f"Handshake too short: {len(payload)}")
        extensions: List[str] = []
        transfer_port = 0
        if len(payload) > fixed:
            try:
                extra = json.loads(payload[fixed:].decode("utf-8"))
                extensions = [str(name) for name in extra.get("m", [])]
                transfer_port = int(extra.get("p", 0))
            except (UnicodeDecodeError, ValueError, TypeError, AttributeError) as e:
                raise WireError(f"Invalid handshake extension data: {e}")
        return cls(
            info_hash=payload[:INFO_HASH_SIZE],
            peer_id=payload[INFO_HASH_SIZE:fixed],
            extensions=extensions,
            transfer_port=transfer_port,
        )


# ============================================================================
# Extensions
# ============================================================================

class ExtensionHandler(ABC):
    """
    A named protocol extension attached to a Wire with ``Wire.use``.

    Subclasses set ``name`` and implement ``on_message``.
    """

    name: str = ""

    def __init__(self):
        self.wire: Optional["Wire"] = None

    def attach(self, wire: "Wire") -> None:
        self.wire = wire

    async def on_handshake(self, handshake: Handshake) -> None:
        return None

    @abstractmethod
    async def on_message(self, message: Dict[str, Any]) -> None:
        ...

    async def send(self, message: Dict[str, Any]) -> None:
        if self.wire is None:
            raise WireError(f"Extension {self.name} is not attached to a wire")
        await self.wire.send_extended(self.name, message)


# ============================================================================
# Wire
# ============================================================================

class Wire:
    """
    One peer connection.

    [USAGE]
        wire = await open_wire(host, port)
        wire.use(SomeExtension(...))
        await wire.handshake(info_hash)
        await wire.run()
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer_id: Optional[bytes] = None,
        transfer_port: int = 0,
    ):
        self.reader = reader
        self.writer = writer
        self.peer_id = peer_id or generate_peer_id()
        self.transfer_port = transfer_port
        self.remote_handshake: Optional[Handshake] = None
        self._handshake_sent = False
        self._extensions: Dict[str, ExtensionHandler] = {}
        self._closed = False

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        peername = self.writer.get_extra_info('peername')
        if not peername:
            return None
        return peername[0], peername[1]

    @property
    def closed(self) -> bool:
        return self._closed

    def use(self, handler: ExtensionHandler) -> ExtensionHandler:
        self._extensions[handler.name] = handler
        handler.attach(self)
        return handler

    def extension(self, name: str) -> Optional[ExtensionHandler]:
        return self._extensions.get(name)

    async def handshake(self, info_hash: bytes) -> None:
        hs = Handshake(
            info_hash=info_hash,
            peer_id=self.peer_id,
            extensions=sorted(self._extensions),
            transfer_port=self.transfer_port,
        )
        await self._send(encode_frame(WireMessageType.HANDSHAKE, hs.to_payload()))
        self._handshake_sent = True

    async def send_extended(self, name: str, message: Dict[str, Any]) -> None:
        payload = json.dumps({"ext": name, "msg": message}, separators=(",", ":")).encode("utf-8")
        await self._send(encode_frame(WireMessageType.EXTENDED, payload))

    async def _send(self, data: bytes) -> None:
        if self._closed:
            raise WireError("Wire is closed")
        self.writer.write(data)
        await self.writer.drain()

    async def read_frame(self) -> Tuple[WireHeader, bytes]:
        header = WireHeader.unpack(await self.reader.readexactly(HEADER_SIZE))
        if header.length > MAX_PAYLOAD_SIZE:
            raise PayloadTooLargeError(f"Payload too large: {header.length}")
        payload = await self.reader.readexactly(header.length)
        return header, payload

    async def run(self) -> None:
        """
        Read and dispatch frames until the peer goes away.

        [SECURITY] InvalidMagicError closes the connection.
        """
        peer_addr = self.address
        try:
            while not self._closed:
                header, payload = await self.read_frame()
                await self._dispatch(header, payload)
        except asyncio.IncompleteReadError:
            logger.debug(f"[WIRE] Connection closed by {peer_addr}")
        except InvalidMagicError as e:
            logger.warning(f"[WIRE] Invalid magic from {peer_addr}: {e}. Closing connection.")
        except WireError as e:
            logger.warning(f"[WIRE] Protocol error from {peer_addr}: {e}")
        except ConnectionError as e:
            logger.debug(f"[WIRE] Connection lost to {peer_addr}: {e}")
        except Exception as e:
            logger.error(f"[WIRE] Connection error from {peer_addr}: {e}")
        finally:
            await self.close()

    async def _dispatch(self, header: WireHeader, payload: bytes) -> None:
        if header.msg_type == WireMessageType.HANDSHAKE:
            hs = Handshake.from_payload(payload)
            self.remote_handshake = hs
            logger.debug(f"[WIRE] Received handshake for {hs.info_hash.hex()} from {self.address}")
            if not self._handshake_sent:
                await self.handshake(hs.info_hash)
            for name, handler in list(self._extensions.items()):
                if name in hs.extensions:
                    await handler.on_handshake(hs)
                else:
                    logger.debug(f"[WIRE] Peer {self.address} lacks extension {name}")
            return

        if header.msg_type == WireMessageType.EXTENDED:
            try:
                envelope = json.loads(payload.decode("utf-8"))
                name = envelope["ext"]
                message = envelope["msg"]
            except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
                raise WireError(f"Invalid extended message: {e}")
            handler = self._extensions.get(name)
            if handler is None or not isinstance(message, dict):
                logger.debug(f"[WIRE] Dropping message for unknown extension {name!r}")
                return
            await handler.on_message(message)
            return

        logger.debug(f"[WIRE] Ignoring message type {header.msg_type}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def open_wire(
    host: str,
    port: int,
    peer_id: Optional[bytes] = None,
    transfer_port: int = 0,
) -> Wire:
    """
    Connect to a peer.

    Raises:
        OSError: Connection refused or unreachable
    """
    reader, writer = await asyncio.open_connection(host, port)
    return Wire(reader, writer, peer_id=peer_id, transfer_port=transfer_port)
