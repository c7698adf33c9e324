"""
DHT Storage - SQLite store of the local DHT engine
==================================================

[DHT] Two tables:
- ``mutable_items``: signed directory records keyed by their 20 byte target
- ``peers``: announcements (info_hash -> host:port)

[STORAGE] Rules:
- Target / info_hash = 20 bytes
- Value = at most 1000 bytes (BEP 44)
- A record with a lower seq than the stored one is refused;
  equal seq overwrites (publishers here always use seq 0)
- TTL = 24 hours for both records and announcements
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Tuple

import aiosqlite

from .record import SignedRecord, MAX_VALUE_SIZE

logger = logging.getLogger(__name__)


DEFAULT_TTL = 86400  # 24 hours
PEER_TTL = 86400


@dataclass
class StoredItem:
    """Record as kept in the store."""

    record: SignedRecord
    timestamp: float = field(default_factory=time.time)
    ttl: int = DEFAULT_TTL

    @property
    def expires_at(self) -> float:
        return self.timestamp + self.ttl

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expires_at


class DHTStorage:
    """
    SQLite backed store for mutable items and peer announcements.

    Several processes may open the same file: a daemon writes records and
    announcements, a remote helper reads them.
    """

    def __init__(self, db_path: str = "dht.db"):
        """
        Args:
            db_path: Database file, or ":memory:"
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Open the database and create the tables."""
        if self._initialized:
            return

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS mutable_items (
                target BLOB PRIMARY KEY,
                public_key BLOB NOT NULL,
                seq INTEGER NOT NULL,
                value BLOB NOT NULL,
                signature BLOB NOT NULL,
                timestamp REAL NOT NULL,
                ttl INTEGER NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS peers (
                info_hash BLOB NOT NULL,
                host TEXT NOT NULL,
                port INTEGER NOT NULL,
                timestamp REAL NOT NULL,
                PRIMARY KEY (info_hash, host, port)
            )
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_peers_hash
            ON peers(info_hash)
        """)

        await self._db.commit()
        self._initialized = True

        logger.info(f"[DHT_STORAGE] Initialized: {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    async def store_item(self, record: SignedRecord, ttl: int = DEFAULT_TTL) -> bool:
        """
        Store a signed record under its target.

        Returns:
            True if stored, False if refused (size, seq)
        """
        if len(record.value) > MAX_VALUE_SIZE:
            logger.warning(f"[DHT_STORAGE] Value too large: {len(record.value)} > {MAX_VALUE_SIZE}")
            return False

        target = record.target
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT seq FROM mutable_items WHERE target = ?",
                (target,)
            )
            row = await cursor.fetchone()
            if row is not None and row["seq"] > record.seq:
                logger.warning(
                    f"[DHT_STORAGE] Refusing seq {record.seq} < stored {row['seq']} "
                    f"for {target.hex()[:16]}..."
                )
                return False

            await self._db.execute(
                """
                INSERT OR REPLACE INTO mutable_items
                (target, public_key, seq, value, signature, timestamp, ttl)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (target, record.public_key, record.seq, record.value,
                 record.signature, time.time(), ttl)
            )
            await self._db.commit()

        logger.debug(f"[DHT_STORAGE] Stored: {target.hex()[:16]}... ({len(record.value)} bytes)")
        return True

    async def get_item(self, target: bytes) -> Optional[StoredItem]:
        """
        Record under ``target``.

        Returns:
            StoredItem or None if absent or expired
        """
        if len(target) != 20:
            return None

        async with self._lock:
            cursor = await self._db.execute(
                "SELECT * FROM mutable_items WHERE target = ?",
                (target,)
            )
            row = await cursor.fetchone()

            if not row:
                return None

            stored = StoredItem(
                record=SignedRecord(
                    public_key=row["public_key"],
                    seq=row["seq"],
                    value=row["value"],
                    signature=row["signature"],
                ),
                timestamp=row["timestamp"],
                ttl=row["ttl"],
            )

            if stored.is_expired:
                await self._db.execute("DELETE FROM mutable_items WHERE target = ?", (target,))
                await self._db.commit()
                return None

            return stored

    async def add_peer(self, info_hash: bytes, host: str, port: int) -> None:
        async with self._lock:
            await self._db.execute(
                """
                INSERT OR REPLACE INTO peers (info_hash, host, port, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                (info_hash, host, port, time.time())
            )
            await self._db.commit()

    async def get_peers(self, info_hash: bytes) -> List[Tuple[str, int]]:
        """Announced, non-expired peers for ``info_hash``."""
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT host, port FROM peers WHERE info_hash = ? AND timestamp + ? > ?",
                (info_hash, PEER_TTL, time.time())
            )
            rows = await cursor.fetchall()
            return [(row["host"], row["port"]) for row in rows]

    async def cleanup(self) -> int:
        """
        Remove expired records and announcements.

        Returns:
            Number of rows removed
        """
        async with self._lock:
            now = time.time()
            items = await self._db.execute(
                "DELETE FROM mutable_items WHERE timestamp + ttl <= ?",
                (now,)
            )
            peers = await self._db.execute(
                "DELETE FROM peers WHERE timestamp + ? <= ?",
                (PEER_TTL, now)
            )
            await self._db.commit()

            deleted = items.rowcount + peers.rowcount
            if deleted > 0:
                logger.info(f"[DHT_STORAGE] Cleanup: removed {deleted} expired entries")

            return deleted

    async def get_stats(self) -> Dict:
        async with self._lock:
            cursor = await self._db.execute("SELECT COUNT(*) as count FROM mutable_items")
            row = await cursor.fetchone()
            items = row["count"]

            cursor = await self._db.execute("SELECT COUNT(*) as count FROM peers")
            row = await cursor.fetchone()
            peers = row["count"]

            return {
                "mutable_items": items,
                "peers": peers,
                "db_path": self.db_path,
            }
