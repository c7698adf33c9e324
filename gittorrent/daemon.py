"""
gittorrent Daemon
=================

[DAEMON] Server role. Every publish cycle:

1. Scan ``repos_dir`` for ``*/git-daemon-export-ok`` (bare) and
   ``*/.git/git-daemon-export-ok`` (working tree) repositories
2. ``git ls-remote`` each one, keeping ``HEAD`` and ``refs/heads/*``
3. Announce every newly seen object id with the wire server port
4. Publish the directory under the node key

Between cycles the wire server answers ut_gittorrent requests through the
PackProvider.

Usage:
    gittorrentd --repos-dir /srv/git
    gittorrentd --repos-dir /srv/git --port 30000 --interval 600
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .config import Config, load_config
from .crypto import KeyPair
from .dht.base import DHT
from .dht.local import LocalDHT
from .directory import DirectoryPublisher, RecordHandle, RepositoryDirectory
from .errors import ConfigOrKeyError, DHTError, DirectoryTooLarge, SubprocessFailure, TransferError
from .git import GitRunner
from .logger import setup_logging
from .provider import AnnouncedIndex, AnnouncedObject, PackProvider
from .transfer import LibtorrentTransfer, TransferEngine
from .wire import Wire, generate_peer_id

logger = logging.getLogger(__name__)


EXPORT_MARKER = "git-daemon-export-ok"
HEAD_REF = "refs/heads/master"


@dataclass
class ExportedRepository:
    name: str
    path: Path


def is_published_ref(ref: str) -> bool:
    return ref == "HEAD" or ref.startswith("refs/heads/")


def find_repositories(repos_dir: Path) -> List[ExportedRepository]:
    """Exported repositories directly under ``repos_dir``, sorted by name."""
    found: Dict[str, ExportedRepository] = {}
    for marker in repos_dir.glob(f"*/{EXPORT_MARKER}"):
        repo = marker.parent
        found.setdefault(repo.name, ExportedRepository(repo.name, repo))
    for marker in repos_dir.glob(f"*/.git/{EXPORT_MARKER}"):
        repo = marker.parent.parent
        found.setdefault(repo.name, ExportedRepository(repo.name, repo))
    return [found[name] for name in sorted(found)]


class GitTorrentDaemon:
    """
    Publishes repositories and serves their packs.

    DHT and transfer engines are started and stopped by the caller.
    """

    def __init__(
        self,
        config: Config,
        keypair: KeyPair,
        dht: DHT,
        transfer: TransferEngine,
        git: Optional[GitRunner] = None,
        host: str = "0.0.0.0",
    ):
        self.config = config
        self.keypair = keypair
        self.dht = dht
        self.transfer = transfer
        self.git = git or GitRunner()
        self.host = host
        self.peer_id = generate_peer_id()

        self.publisher = DirectoryPublisher(dht, keypair)
        self.provider = PackProvider(self.git, transfer, config.packs_path)
        self.directory: RepositoryDirectory = {}
        self.last_handle: Optional[RecordHandle] = None

        self._announced: Set[str] = set()
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: List[asyncio.Task] = []
        self._connections: Set[asyncio.Task] = set()
        self._running = False

    @property
    def port(self) -> int:
        """Bound wire server port, the configured one before start."""
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self.config.daemon.announce_port

    @property
    def repos_dir(self) -> Path:
        return Path(self.config.daemon.repos_dir).expanduser()

    # ------------------------------------------------------------------
    # Publish cycle
    # ------------------------------------------------------------------

    async def scan(self) -> Tuple[RepositoryDirectory, AnnouncedIndex]:
        directory: RepositoryDirectory = {}
        index: AnnouncedIndex = {}

        for repo in find_repositories(self.repos_dir):
            try:
                refs = await self.git.ls_remote(repo.path)
            except (SubprocessFailure, OSError) as e:
                logger.error(f"[DAEMON] Cannot list {repo.path}: {e}")
                continue

            kept = {ref: sha for sha, ref in refs if is_published_ref(ref)}
            head = kept.get(HEAD_REF)
            directory[repo.name] = kept
            for sha in kept.values():
                index[sha] = AnnouncedObject(repo_path=repo.path, head=head)
            logger.debug(f"[DAEMON] {repo.name}: {len(kept)} refs")

        return directory, index

    async def publish_cycle(self) -> Optional[RecordHandle]:
        directory, index = await self.scan()
        self.directory = directory
        self.provider.update_index(index)

        for sha in index:
            if sha in self._announced:
                continue
            try:
                await self.dht.announce(bytes.fromhex(sha), self.port)
            except DHTError as e:
                logger.error(f"[DAEMON] Announce of {sha} failed: {e}")
                continue
            self._announced.add(sha)
            logger.info(f"[DAEMON] Announced {sha}")

        try:
            handle = await self.publisher.publish(directory)
        except DirectoryTooLarge as e:
            logger.error(f"[DAEMON] {e}, not publishing this cycle")
            return None
        except DHTError as e:
            logger.error(f"[DAEMON] Publish failed: {e}")
            return None

        self.last_handle = handle
        logger.info(f"[DAEMON] Directory available at gittorrent://{handle.key}/<repository>")
        return handle

    async def _publish_loop(self) -> None:
        interval = self.config.daemon.publish_interval
        while self._running:
            try:
                await self.publish_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[DAEMON] Publish cycle error: {e}")
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

    # ------------------------------------------------------------------
    # Wire server
    # ------------------------------------------------------------------

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task:
            self._connections.add(task)
        wire = Wire(reader, writer, peer_id=self.peer_id, transfer_port=self.transfer.listen_port)
        wire.use(self.provider.extension())
        logger.debug(f"[DAEMON] Connection from {wire.address}")
        try:
            await wire.run()
        finally:
            if task:
                self._connections.discard(task)

    async def start(self) -> None:
        if self._running:
            return
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.config.daemon.announce_port,
        )
        self._running = True
        logger.info(f"[DAEMON] Listening on {self.host}:{self.port}")
        self._tasks.append(asyncio.create_task(self._publish_loop()))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks + list(self._connections):
            task.cancel()
        for task in self._tasks + list(self._connections):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._connections.clear()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("[DAEMON] Stopped")


# ============================================================================
# Entry point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gittorrentd",
        description="Publish git repositories over the DHT and serve their packs",
    )
    parser.add_argument(
        "--repos-dir", "-d",
        type=str,
        default=None,
        help="Directory holding exported repositories (default: from config)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Wire server port announced with each object (default: from config)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between publish cycles (default: from config)",
    )
    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="Configuration directory (default: ~/.config/gittorrent)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: from config)",
    )
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(Path(args.config_dir).expanduser() if args.config_dir else None)
    except ConfigOrKeyError as e:
        setup_logging()
        logger.error(f"[DAEMON] {e}")
        return 1

    if args.repos_dir:
        config.daemon.repos_dir = args.repos_dir
    if args.port is not None:
        config.daemon.announce_port = args.port
    if args.interval is not None:
        config.daemon.publish_interval = args.interval
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(config.log_level, config.color)

    try:
        keypair = KeyPair.load_or_create(config.key_path)
    except ConfigOrKeyError as e:
        logger.error(f"[DAEMON] {e}")
        return 1

    dht = LocalDHT(config.dht_storage_path, announce_host=config.dht.announce_host)
    transfer = LibtorrentTransfer(
        listen_port=config.transfer.listen_port,
        save_path=str(config.transfer_save_path),
    )
    daemon = GitTorrentDaemon(config, keypair, dht, transfer)

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[DAEMON] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    try:
        await dht.start()
        await transfer.start()
        await daemon.start()
        await shutdown_event.wait()
    except (TransferError, OSError) as e:
        logger.error(f"[DAEMON] Startup failed: {e}")
        return 1
    finally:
        await daemon.stop()
        await transfer.stop()
        await dht.stop()
        logger.info("[DAEMON] Shutdown complete")
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
