"""
DHT Engine Interface
====================

[DHT] The core talks to a DHT engine through this small surface only:

- ``ready``           engine has joined and can serve requests
- ``announce(id)``    advertise that this node serves swarm ``id``
- ``lookup(id)``      find peers of swarm ``id``; each is reported to
                      peer listeners as a ``PeerEvent(addr, info_hash)``
- ``get(target)``     fetch the signed mutable record under ``target``
- ``put(record)``     store a signed mutable record

Routing, node discovery and bootstrap are the engine's business.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from ..events import PeerEvent, PeerEventBus, PeerListener
from .record import SignedRecord

logger = logging.getLogger(__name__)


Address = Tuple[str, int]


class DHT(ABC):
    """Base class of DHT engines."""

    def __init__(self):
        self.peer_events = PeerEventBus()
        self._ready = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def _mark_ready(self) -> None:
        self._ready.set()
        logger.info("[DHT] Ready")

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def subscribe_peers(self, listener: PeerListener) -> None:
        self.peer_events.subscribe(listener)

    def unsubscribe_peers(self, listener: PeerListener) -> None:
        self.peer_events.unsubscribe(listener)

    async def _emit_peer(self, addr: Address, info_hash: bytes) -> None:
        await self.peer_events.emit(PeerEvent(addr=tuple(addr), info_hash=info_hash))

    async def start(self) -> None:
        self._mark_ready()

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def announce(self, info_hash: bytes, port: int) -> None:
        """Advertise ``port`` on this node as a peer for ``info_hash``."""

    @abstractmethod
    async def lookup(self, info_hash: bytes) -> int:
        """Emit a PeerEvent per peer found. Returns the number found."""

    @abstractmethod
    async def get(self, target: bytes) -> Optional[SignedRecord]:
        """Signed record stored under ``target``, or None."""

    @abstractmethod
    async def put(self, record: SignedRecord) -> bytes:
        """Store ``record``. Returns the target it was stored under."""
