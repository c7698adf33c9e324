"""
gittorrent Test Configuration
=============================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, fakes for DHT, transfer engine and git
- Integration tests: Real sqlite, sockets and git binary
- E2E tests: Daemon and remote helper against one shared DHT

[FIXTURES]
- keypair: Fresh Ed25519 identity
- fake_dht: In-memory DHT engine that counts lookups
- transfer_swarm / fake_transfer: Transfer engines sharing one "swarm"
- fake_git: GitRunner stand-in with scripted exit codes
- git_repo: Real repository with two commits (needs git)

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Integration tests
    pytest tests/e2e/           # End-to-end tests
"""

import asyncio
import hashlib
import logging
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Generator, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from gittorrent.crypto import KeyPair
from gittorrent.dht.base import DHT
from gittorrent.dht.record import SignedRecord
from gittorrent.errors import TransferError
from gittorrent.transfer import TransferEngine


GIT_AVAILABLE = shutil.which("git") is not None

requires_git = pytest.mark.skipif(not GIT_AVAILABLE, reason="git binary not available")


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (I/O, slower)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        path = str(item.fspath)
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in path:
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="gittorrent_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """Strip GITTORRENT_* variables so config tests see defaults."""
    for name in list(os.environ):
        if name.startswith("GITTORRENT_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ============================================================================
# Crypto Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def keypair() -> KeyPair:
    """Create fresh signing identity for each test."""
    return KeyPair()


# ============================================================================
# DHT Fixtures
# ============================================================================

class FakeDHT(DHT):
    """
    In-memory DHT engine.

    [FEATURES]
    - Records and announcements in dicts
    - Counts lookups and puts per target
    - ``fail_lookup`` makes every lookup raise
    """

    def __init__(self):
        super().__init__()
        self.records: Dict[bytes, SignedRecord] = {}
        self.announced: Dict[bytes, List[Tuple[str, int]]] = {}
        self.lookups: List[bytes] = []
        self.puts: List[SignedRecord] = []
        self.fail_lookup = False
        self._mark_ready()

    async def announce(self, info_hash: bytes, port: int) -> None:
        peers = self.announced.setdefault(info_hash, [])
        if ("127.0.0.1", port) not in peers:
            peers.append(("127.0.0.1", port))

    async def lookup(self, info_hash: bytes) -> int:
        self.lookups.append(info_hash)
        if self.fail_lookup:
            raise RuntimeError("lookup exploded")
        peers = list(self.announced.get(info_hash, []))
        for addr in peers:
            await self._emit_peer(addr, info_hash)
        return len(peers)

    async def get(self, target: bytes) -> Optional[SignedRecord]:
        return self.records.get(target)

    async def put(self, record: SignedRecord) -> bytes:
        self.puts.append(record)
        self.records[record.target] = record
        return record.target


@pytest.fixture(scope="function")
def fake_dht() -> FakeDHT:
    return FakeDHT()


# ============================================================================
# Transfer Fixtures
# ============================================================================

@dataclass
class TransferSwarm:
    """What every FakeTransfer on the "network" has seeded."""

    seeded: Dict[str, Path] = field(default_factory=dict)


class FakeTransfer(TransferEngine):
    """
    Transfer engine that copies files through a shared TransferSwarm.

    Transfer ids are the sha1 of the file content, so the same pack seeded
    twice gets the same id.
    """

    def __init__(self, swarm: TransferSwarm, save_path: Path, listen_port: int = 6882):
        self.swarm = swarm
        self.save_path = Path(save_path)
        self._listen_port = listen_port
        self.started = False
        self.seeds: List[Path] = []
        self.downloads: List[Tuple[str, Tuple]] = []

    @property
    def listen_port(self) -> int:
        return self._listen_port

    async def start(self) -> None:
        self.started = True

    async def seed(self, path: Path) -> str:
        data = Path(path).read_bytes()
        transfer_id = hashlib.sha1(data).hexdigest()
        self.swarm.seeded[transfer_id] = Path(path)
        self.seeds.append(Path(path))
        return transfer_id

    async def download(self, transfer_id: str, peers: Sequence[Tuple[str, int]] = ()) -> Path:
        self.downloads.append((transfer_id, tuple(peers)))
        source = self.swarm.seeded.get(transfer_id)
        if source is None:
            raise TransferError(f"Nobody seeds {transfer_id}")
        target = self.save_path / transfer_id / source.name
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        return target


@pytest.fixture(scope="function")
def transfer_swarm() -> TransferSwarm:
    return TransferSwarm()


@pytest.fixture(scope="function")
def fake_transfer(transfer_swarm: TransferSwarm, temp_dir: Path) -> FakeTransfer:
    return FakeTransfer(transfer_swarm, temp_dir / "downloads")


# ============================================================================
# git Fixtures
# ============================================================================

class FakeGit:
    """
    GitRunner stand-in.

    [FEATURES]
    - ``refs`` served by ls_remote per path
    - ``pack_code`` / ``index_code`` scripted exit codes
    - ``pack_gate`` / ``index_gate`` hold a call until set
    - every call recorded
    """

    def __init__(self):
        self.refs: Dict[str, List[Tuple[str, str]]] = {}
        self.pack_code = 0
        self.index_code = 0
        self.pack_calls: List[Tuple[str, str, Optional[str]]] = []
        self.indexed: List[bytes] = []
        self.pack_gate: Optional[asyncio.Event] = None
        self.index_gate: Optional[asyncio.Event] = None

    async def ls_remote(self, url) -> List[Tuple[str, str]]:
        return list(self.refs.get(str(url), []))

    async def pack_objects(self, repo, want: str, have: Optional[str], output: Path) -> int:
        self.pack_calls.append((str(repo), want, have))
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"PACK ")
        if self.pack_gate is not None:
            await self.pack_gate.wait()
        with open(output, "ab") as fh:
            fh.write(f"{want} ^{have}".encode("ascii"))
        return self.pack_code

    async def index_pack(self, pack: Path) -> int:
        if self.index_gate is not None:
            await self.index_gate.wait()
        self.indexed.append(Path(pack).read_bytes())
        return self.index_code


@pytest.fixture(scope="function")
def fake_git() -> FakeGit:
    return FakeGit()


def run_git(*args: str, cwd: Optional[Path] = None) -> str:
    env = dict(os.environ)
    env.update({
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    })
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd else None,
        env=env,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@dataclass
class GitRepo:
    path: Path
    first: str
    second: str


@pytest.fixture(scope="function")
def git_repo(temp_dir: Path) -> GitRepo:
    """
    Working-tree repository ``repos/project`` with two commits on master,
    marked for export.
    """
    if not GIT_AVAILABLE:
        pytest.skip("git binary not available")

    repo = temp_dir / "repos" / "project"
    repo.mkdir(parents=True)
    run_git("init", "-q", "-b", "master", cwd=repo)
    (repo / "README").write_text("first\n")
    run_git("add", "README", cwd=repo)
    run_git("commit", "-q", "-m", "first", cwd=repo)
    first = run_git("rev-parse", "HEAD", cwd=repo)
    (repo / "README").write_text("second\n")
    run_git("commit", "-q", "-am", "second", cwd=repo)
    second = run_git("rev-parse", "HEAD", cwd=repo)
    (repo / ".git" / "git-daemon-export-ok").touch()
    return GitRepo(path=repo, first=first, second=second)


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def async_timeout():
    """Helper for async test timeouts."""
    async def _timeout(coro, seconds: float = 5.0):
        return await asyncio.wait_for(coro, timeout=seconds)
    return _timeout


def feed_reader(text: str) -> asyncio.StreamReader:
    """StreamReader preloaded with ``text`` and EOF."""
    reader = asyncio.StreamReader()
    reader.feed_data(text.encode("utf-8"))
    reader.feed_eof()
    return reader


@pytest.fixture(scope="function")
def stdin_factory():
    return feed_reader
