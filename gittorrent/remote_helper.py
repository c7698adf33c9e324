"""
git Remote Helper
=================

[HELPER] ``git-remote-gittorrent <remote> <url>``, spoken to by git over
stdin/stdout:

    capabilities        -> "fetch\\n\\n"
    list                -> "<sha> <ref>\\n" per ref, then "\\n"
    fetch <sha> <ref>   -> accumulated until a blank line
    <blank line>        -> fetch everything accumulated, answer "\\n", exit 0

A blank line with nothing accumulated, or end of input, exits 0.

Refs come from the DHT for ``gittorrent://<40 hex key>/<repo>`` URLs and
from ``git ls-remote`` for anything else (``gittorrent:`` rewritten to
``git:``).

stdout belongs to git, all logging goes to stderr.
"""

import argparse
import asyncio
import logging
import re
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set, TextIO, Tuple

from .config import load_config
from .dht.base import DHT
from .dht.local import LocalDHT
from .directory import DirectoryResolver
from .errors import (
    ConfigOrKeyError,
    DirectoryNotFound,
    InvalidURLError,
    MalformedDirectory,
    SubprocessFailure,
    TransferError,
)
from .fetch import FetchOrchestrator
from .git import GitRunner
from .logger import setup_logging
from .transfer import LibtorrentTransfer

logger = logging.getLogger(__name__)


URL_RE = re.compile(r"^gittorrent://([a-f0-9]{40})/(.*)$")

RefList = List[Tuple[str, str]]


def parse_url(url: str) -> Optional[Tuple[str, str]]:
    """``gittorrent://<key>/<repo>`` -> (key, repo); None for other URLs."""
    match = URL_RE.match(url)
    if not match:
        return None
    return match.group(1), match.group(2)


def to_plain_url(url: str) -> str:
    """
    Raises:
        InvalidURLError: Empty URL
    """
    url = url.strip()
    if not url:
        raise InvalidURLError("Empty remote URL")
    return re.sub(r"^gittorrent:", "git:", url)


async def resolve_refs(url: str, dht: DHT, git: GitRunner) -> RefList:
    """
    Refs advertised for ``url``.

    An unknown key or repository gives an empty list.

    Raises:
        InvalidURLError: Empty URL
        SubprocessFailure: git ls-remote failed for a plain URL
    """
    parsed = parse_url(url)
    if parsed is None:
        return await git.ls_remote(to_plain_url(url))

    key, repo = parsed
    await dht.wait_ready()
    try:
        refs = await DirectoryResolver(dht).resolve_repository(key, repo)
    except (DirectoryNotFound, MalformedDirectory) as e:
        logger.error(f"[HELPER] {e}")
        return []
    return [(sha, ref) for ref, sha in sorted(refs.items())]


class HelperState(Enum):
    READY = "ready"
    COLLECTING = "collecting"
    FETCHING = "fetching"
    DONE = "done"


class RemoteHelper:
    """Line protocol between git and the FetchOrchestrator."""

    def __init__(
        self,
        refs: RefList,
        orchestrator: FetchOrchestrator,
        reader: asyncio.StreamReader,
        output: TextIO,
    ):
        self.refs = refs
        self.orchestrator = orchestrator
        self.reader = reader
        self.output = output
        self.state = HelperState.READY
        self.wanted: Set[Tuple[str, str]] = set()

    def _write(self, text: str) -> None:
        self.output.write(text)
        self.output.flush()

    async def run(self) -> int:
        """Serve git until done. Returns the exit status."""
        while True:
            raw = await self.reader.readline()
            if not raw:
                logger.debug("[HELPER] End of input")
                self.state = HelperState.DONE
                return 0

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line == "":
                return await self._flush()

            if line == "capabilities":
                self._write("fetch\n\n")
            elif line == "list" or line.startswith("list "):
                self._list()
            elif line.startswith("fetch "):
                self._collect(line)
            else:
                logger.warning(f"[HELPER] Unhandled command: {line!r}")

    def _list(self) -> None:
        for sha, ref in self.refs:
            self._write(f"{sha} {ref}\n")
        self._write("\n")
        logger.debug(f"[HELPER] Listed {len(self.refs)} refs")

    def _collect(self, line: str) -> None:
        parts = line.split()
        if len(parts) != 3:
            logger.warning(f"[HELPER] Malformed fetch line: {line!r}")
            return
        _, sha, ref = parts
        self.wanted.add((sha, ref))
        self.state = HelperState.COLLECTING

    async def _flush(self) -> int:
        if not self.wanted:
            self.state = HelperState.DONE
            return 0

        self.state = HelperState.FETCHING
        try:
            await self.orchestrator.prepare()
        except TransferError as e:
            logger.error(f"[HELPER] {e}")
            return 1

        logger.info(f"[HELPER] Fetching {len(self.wanted)} objects")
        await self.orchestrator.request_objects(sorted(self.wanted))
        self._write("\n")
        self.state = HelperState.DONE
        return 0


# ============================================================================
# Entry point
# ============================================================================

async def open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-remote-gittorrent",
        description="git remote helper for gittorrent:// URLs",
    )
    parser.add_argument("remote", help="Remote name, or the URL itself")
    parser.add_argument("url", nargs="?", default=None, help="Remote URL")
    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="Configuration directory (default: ~/.config/gittorrent)",
    )
    return parser


async def main(
    argv: Optional[List[str]] = None,
    reader: Optional[asyncio.StreamReader] = None,
    output: Optional[TextIO] = None,
) -> int:
    args = build_parser().parse_args(argv)
    url = args.url if args.url is not None else args.remote

    try:
        config = load_config(Path(args.config_dir).expanduser() if args.config_dir else None)
    except ConfigOrKeyError as e:
        setup_logging()
        logger.error(f"[HELPER] {e}")
        return 1
    setup_logging(config.log_level, config.color)

    remote = parse_url(args.remote)
    if remote:
        logger.info(f"[HELPER] Remote {args.remote} published by key {remote[0]}")

    dht = LocalDHT(config.dht_storage_path, announce_host=config.dht.announce_host)
    transfer = LibtorrentTransfer(
        listen_port=config.transfer.listen_port,
        save_path=str(config.transfer_save_path),
    )
    git = GitRunner()
    orchestrator = FetchOrchestrator(dht, transfer, git)

    try:
        await dht.start()
        try:
            refs = await resolve_refs(url, dht, git)
        except (InvalidURLError, SubprocessFailure, OSError) as e:
            logger.error(f"[HELPER] {e}")
            return 1

        helper = RemoteHelper(
            refs,
            orchestrator,
            reader or await open_stdin(),
            output or sys.stdout,
        )
        return await helper.run()
    finally:
        await orchestrator.close()
        await transfer.stop()
        await dht.stop()


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
