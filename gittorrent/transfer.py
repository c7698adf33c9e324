"""
Transfer Engine
===============

[TRANSFER] Bulk data moves through a BitTorrent session. The core needs two
operations only:

- ``seed(path) -> transfer_id``: make a file available, get its info hash
- ``download(transfer_id, peers) -> path``: fetch by info hash, resolve
  once the file is complete on disk

LibtorrentTransfer runs libtorrent's alert loop in a daemon thread and hands
completions back to the asyncio loop.
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import TransferError

try:
    import libtorrent as lt  # type: ignore
    _LT_AVAILABLE = True
except Exception:  # pragma: no cover
    lt = None  # type: ignore
    _LT_AVAILABLE = False

logger = logging.getLogger(__name__)


Address = Tuple[str, int]


class TransferEngine(ABC):
    """Seed files and download them by transfer id."""

    @property
    def listen_port(self) -> int:
        return 0

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def seed(self, path: Path) -> str:
        """Seed ``path``. Returns its transfer id (40 hex info hash)."""

    @abstractmethod
    async def download(self, transfer_id: str, peers: Sequence[Address] = ()) -> Path:
        """Download ``transfer_id``. Returns the path of the completed file."""


@dataclass
class TransferItem:
    info_hash: str
    handle: Any
    save_path: Path
    seeding: bool = False
    added_at: float = field(default_factory=time.time)
    waiters: List[asyncio.Future] = field(default_factory=list)


class LibtorrentTransfer(TransferEngine):
    """TransferEngine on top of a libtorrent session."""

    def __init__(
        self,
        listen_port: int = 6882,
        save_path: str = "transfers",
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._listen_port = listen_port
        self.save_path = Path(save_path)
        self._loop = loop
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._items: Dict[str, TransferItem] = {}

        self._session = None
        if _LT_AVAILABLE:
            self._session = lt.session()
            self._configure_session()
        else:
            logger.warning("[TRANSFER] libtorrent not available")

    @property
    def listen_port(self) -> int:
        if self._session is not None:
            try:
                return int(self._session.listen_port())
            except Exception:
                pass
        return self._listen_port

    async def start(self) -> None:
        if self._running:
            return
        if not self._session:
            raise TransferError("libtorrent is not installed")
        self._loop = asyncio.get_running_loop()
        self.save_path.mkdir(parents=True, exist_ok=True)
        self._running = True
        self._thread = threading.Thread(target=self._alert_loop, daemon=True)
        self._thread.start()
        logger.info(f"[TRANSFER] Session started on port {self.listen_port}")

    async def stop(self) -> None:
        self._running = False
        if self._thread and self._thread.is_alive():
            await asyncio.get_running_loop().run_in_executor(None, self._thread.join, 2.0)
        logger.info("[TRANSFER] Session stopped")

    async def seed(self, path: Path) -> str:
        if not self._running:
            raise TransferError("Transfer session is not running")
        path = Path(path).resolve()
        if not path.is_file():
            raise TransferError(f"Nothing to seed at {path}")

        # hashing pieces reads the whole file
        torrent_info = await asyncio.get_running_loop().run_in_executor(None, self._make_torrent, path)

        params = lt.add_torrent_params()
        params.ti = torrent_info
        params.save_path = str(path.parent)
        params.flags |= lt.torrent_flags.seed_mode
        handle = self._session.add_torrent(params)

        info_hash = self._get_info_hash(handle) or self._torrent_info_hash(torrent_info)
        with self._lock:
            self._items[info_hash] = TransferItem(
                info_hash=info_hash,
                handle=handle,
                save_path=path.parent,
                seeding=True,
            )
        logger.info(f"[TRANSFER] Seeding {path.name} as {info_hash}")
        return info_hash

    async def download(self, transfer_id: str, peers: Sequence[Address] = ()) -> Path:
        if not self._running:
            raise TransferError("Transfer session is not running")

        future = self._loop.create_future()
        with self._lock:
            item = self._items.get(transfer_id)
            if item is None:
                save_path = self.save_path / transfer_id
                save_path.mkdir(parents=True, exist_ok=True)
                params = lt.parse_magnet_uri(f"magnet:?xt=urn:btih:{transfer_id}")
                params.save_path = str(save_path)
                handle = self._session.add_torrent(params)
                item = TransferItem(info_hash=transfer_id, handle=handle, save_path=save_path)
                self._items[transfer_id] = item
            item.waiters.append(future)

        for peer in peers:
            try:
                item.handle.connect_peer(peer)
            except Exception as e:
                logger.warning(f"[TRANSFER] Cannot connect {peer[0]}:{peer[1]} for {transfer_id}: {e}")

        if item.seeding:
            # already complete locally
            self._resolve(transfer_id)

        logger.info(f"[TRANSFER] Downloading {transfer_id}")
        return await future

    # ------------------------------------------------------------------
    # Internal handlers
    # ------------------------------------------------------------------

    def _configure_session(self) -> None:
        try:
            self._session.apply_settings({
                "listen_interfaces": f"0.0.0.0:{self._listen_port}",
                "enable_dht": False,
                "enable_lsd": False,
            })
        except Exception as e:
            logger.warning(f"[TRANSFER] Failed to bind port: {e}")
        try:
            self._session.apply_settings({
                "alert_mask": (
                    lt.alert.category_t.status_notification
                    | lt.alert.category_t.error_notification
                    | lt.alert.category_t.storage_notification
                ),
            })
        except Exception:
            pass

    @staticmethod
    def _make_torrent(path: Path) -> Any:
        storage = lt.file_storage()
        lt.add_files(storage, str(path))
        torrent = lt.create_torrent(storage)
        lt.set_piece_hashes(torrent, str(path.parent))
        return lt.torrent_info(torrent.generate())

    def _alert_loop(self) -> None:
        while self._running and self._session:
            try:
                alert = self._session.wait_for_alert(500)
                if alert:
                    for item in self._session.pop_alerts():
                        self._handle_alert(item)
            except Exception as e:
                logger.warning(f"[TRANSFER] Alert loop error: {e}")
                time.sleep(0.5)

    def _handle_alert(self, alert: Any) -> None:
        name = alert.__class__.__name__
        if name == "torrent_finished_alert":
            self._handle_finished(alert)
        elif name.endswith("_error_alert"):
            logger.warning(f"[TRANSFER] {alert.message()}")

    def _handle_finished(self, alert: Any) -> None:
        handle = getattr(alert, "handle", None)
        if not handle:
            return
        info_hash = self._get_info_hash(handle) or self._find_info_hash(handle)
        if not info_hash:
            return
        if self._loop and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._resolve, info_hash)

    def _resolve(self, info_hash: str) -> None:
        """Runs on the event loop: hand the finished file to all waiters."""
        with self._lock:
            item = self._items.get(info_hash)
            if not item:
                return
            waiters, item.waiters = item.waiters, []

        path = self._first_file(item)
        for future in waiters:
            if future.done():
                continue
            if path is None:
                future.set_exception(TransferError(f"Transfer {info_hash} has no files"))
            else:
                future.set_result(path)

    def _first_file(self, item: TransferItem) -> Optional[Path]:
        try:
            info = item.handle.torrent_file()
            storage = info.files()
            if storage.num_files() == 0:
                return None
            return item.save_path / storage.file_path(0)
        except Exception:
            return None

    @staticmethod
    def _torrent_info_hash(info: Any) -> str:
        try:
            return str(info.info_hashes().v1)
        except Exception:
            return str(info.info_hash())

    def _get_info_hash(self, handle: Any) -> str:
        try:
            return str(handle.info_hashes().v1)
        except Exception:
            try:
                return str(handle.info_hash())
            except Exception:
                return ""

    def _find_info_hash(self, handle: Any) -> str:
        with self._lock:
            for key, item in self._items.items():
                if item.handle == handle:
                    return key
        return ""
