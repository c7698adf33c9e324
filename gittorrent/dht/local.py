"""
Local DHT Engine
================

[DHT] A DHT engine whose "network" is a shared SQLite file. Every daemon
and remote helper pointed at the same file sees the same announcements and
records, which covers a single host (or hosts sharing a filesystem)
without joining a public Kademlia network.

Like a BEP 44 storage node, ``put`` refuses records with a bad signature.
``get`` returns the record as stored; consumers decide what to trust.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Union

from ..errors import DHTError
from .base import DHT
from .record import SignedRecord
from .storage import DHTStorage

logger = logging.getLogger(__name__)


CLEANUP_INTERVAL = 300  # 5 minutes


class LocalDHT(DHT):
    """
    DHT engine backed by DHTStorage.

    [USAGE]
    ```python
    dht = LocalDHT("~/.config/gittorrent/dht.db", announce_host="127.0.0.1")
    await dht.start()
    await dht.put(record)
    record = await dht.get(target)
    ```
    """

    def __init__(
        self,
        storage_path: Union[str, Path] = "dht.db",
        announce_host: str = "127.0.0.1",
    ):
        super().__init__()
        self.storage_path = str(storage_path)
        self.announce_host = announce_host
        self.storage = DHTStorage(self.storage_path)
        self._tasks: List[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        if self.storage_path != ":memory:":
            Path(self.storage_path).parent.mkdir(parents=True, exist_ok=True)
        await self.storage.initialize()
        self._running = True
        self._tasks.append(asyncio.create_task(self._cleanup_loop()))
        self._mark_ready()

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.storage.close()
        logger.info("[DHT] Stopped")

    async def announce(self, info_hash: bytes, port: int) -> None:
        if len(info_hash) != 20:
            raise DHTError(f"Invalid info_hash length: {len(info_hash)}")
        await self.storage.add_peer(info_hash, self.announce_host, port)
        logger.debug(f"[DHT] Announced {info_hash.hex()} on {self.announce_host}:{port}")

    async def lookup(self, info_hash: bytes) -> int:
        if len(info_hash) != 20:
            raise DHTError(f"Invalid info_hash length: {len(info_hash)}")
        peers = await self.storage.get_peers(info_hash)
        if not peers:
            logger.debug(f"[DHT] No peers for {info_hash.hex()}")
        for addr in peers:
            await self._emit_peer(addr, info_hash)
        return len(peers)

    async def get(self, target: bytes) -> Optional[SignedRecord]:
        stored = await self.storage.get_item(target)
        return stored.record if stored else None

    async def put(self, record: SignedRecord) -> bytes:
        if not record.verify():
            raise DHTError("Refusing record with invalid signature")
        if not await self.storage.store_item(record):
            raise DHTError(f"Record for {record.target_hex} was refused")
        return record.target

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL)
                if not self._running:
                    break
                await self.storage.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[DHT] Cleanup error: {e}")
