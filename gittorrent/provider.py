"""
Pack Provider
=============

[PACK] Serving side of ut_gittorrent. For an announced object id it runs
``git pack-objects`` against the owning repository, seeds the result and
hands the transfer id back to the extension, which replies with
``sendTransfer``.

Concurrent requests for the same ``(object id, have)`` share one pipeline,
and every pair writes its own pack file, so a seeded file is never
rewritten.

Failures are logged and answered with silence: the requester keeps
waiting, no retry is attempted.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import SubprocessFailure, TransferError, UnknownObjectRequested
from .extension import ProviderExtension
from .git import GitRunner
from .transfer import TransferEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnnouncedObject:
    """Where an announced object id lives."""

    repo_path: Path
    # refs/heads/master of the repository, None when it has none
    head: Optional[str] = None


# object id -> AnnouncedObject
AnnouncedIndex = Dict[str, AnnouncedObject]


def pack_path(packs_dir: Path, object_id: str, have: Optional[str]) -> Path:
    """``<want>.pack``, or ``<want>-<have>.pack`` for a thin pack."""
    name = f"{object_id}-{have}" if have else object_id
    return Path(packs_dir) / f"{name}.pack"


class PackProvider:
    """Generates and seeds packs for announced object ids."""

    def __init__(
        self,
        git: GitRunner,
        transfer: TransferEngine,
        packs_dir: Path,
        index: Optional[AnnouncedIndex] = None,
    ):
        self.git = git
        self.transfer = transfer
        self.packs_dir = Path(packs_dir)
        self.index: AnnouncedIndex = dict(index or {})
        self._seeded: Dict[Tuple[str, Optional[str]], str] = {}
        self._in_flight: Dict[Tuple[str, Optional[str]], asyncio.Future] = {}

    def update_index(self, index: AnnouncedIndex) -> None:
        # replaced wholesale, readers never see a half-built index
        self.index = index

    async def handle_generate_pack(self, object_id: str) -> Optional[str]:
        """
        Produce and seed the pack for ``object_id``.

        Returns:
            Transfer id to reply with, or None when nothing must be sent
        """
        entry = self.index.get(object_id)
        if entry is None:
            logger.warning(f"[PACK] {UnknownObjectRequested(f'Asked for unknown object {object_id}')}")
            return None

        have = entry.head if entry.head and entry.head != object_id else None
        key = (object_id, have)
        cached = self._seeded.get(key)
        if cached:
            logger.info(f"[PACK] Reusing transfer {cached} for {object_id}")
            return cached

        pipeline = self._in_flight.get(key)
        if pipeline is None:
            pipeline = asyncio.ensure_future(self._generate(entry, object_id, have))
            self._in_flight[key] = pipeline
            pipeline.add_done_callback(lambda _: self._in_flight.pop(key, None))
        else:
            logger.debug(f"[PACK] Pack for {object_id} already being generated, waiting")
        # one requester going away must not cancel the others
        return await asyncio.shield(pipeline)

    async def _generate(self, entry: AnnouncedObject, object_id: str, have: Optional[str]) -> Optional[str]:
        output = pack_path(self.packs_dir, object_id, have)
        logger.info(f"[PACK] Generating pack for {object_id} in {entry.repo_path}"
                    + (f" against {have}" if have else ""))
        try:
            code = await self.git.pack_objects(entry.repo_path, object_id, have, output)
        except OSError as e:
            logger.error(f"[PACK] Cannot run git pack-objects for {object_id}: {e}")
            return None

        if code != 0:
            failure = SubprocessFailure(["git", "-C", str(entry.repo_path), "pack-objects"], code)
            logger.error(f"[PACK] {failure}")
            return None

        try:
            transfer_id = await self.transfer.seed(output)
        except TransferError as e:
            logger.error(f"[PACK] Cannot seed {output}: {e}")
            return None

        self._seeded[(object_id, have)] = transfer_id
        logger.info(f"[PACK] Seeding {object_id} as transfer {transfer_id}")
        return transfer_id

    def extension(self) -> ProviderExtension:
        """Fresh provider extension for one inbound connection."""
        return ProviderExtension(self.handle_generate_pack)
