"""
Fetch Orchestrator
==================

[FETCH] Turns a set of wanted ``(object id, branch)`` pairs into packs
indexed by ``git index-pack``.

Per object id (a "goal"):
1. First request performs ``dht.lookup(id)``; the object id doubles as the
   swarm id.
2. Every peer reported for the id gets a wire running the requester side
   of ut_gittorrent.
3. The first transfer id offered wins: it is downloaded and streamed into
   ``git index-pack``.

[PENDING] The first peer of a goal increments the pending counter, the
exit of index-pack decrements it (whatever the exit code). The batch is
done once the counter is back at zero and every request has been issued.
Nothing times out: a goal without peers or replies stalls the batch.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .dht.base import DHT
from .errors import LookupFailure, SubprocessFailure, TransferError
from .events import PeerEvent
from .extension import RequesterExtension
from .git import GitRunner
from .transfer import TransferEngine
from .wire import Wire, generate_peer_id, open_wire

logger = logging.getLogger(__name__)


Address = Tuple[str, int]


def normalize_branch(ref: str) -> str:
    """``refs/heads/master`` -> ``master``, ``refs/remotes/origin/head`` -> ``remotes/origin``."""
    branch = re.sub(r"^refs/(heads/)?", "", ref)
    return re.sub(r"/head$", "", branch)


@dataclass
class FetchGoal:
    """Everything known about one wanted object id."""

    object_id: str
    branches: Set[str] = field(default_factory=set)
    peers: Set[Address] = field(default_factory=set)
    peer_seen: bool = False
    transfer_id: Optional[str] = None
    got: bool = False
    completed: bool = False
    wires: List[Wire] = field(default_factory=list)


class FetchOrchestrator:
    """
    Drives goals to completion.

    [USAGE]
        orchestrator = FetchOrchestrator(dht, transfer, git)
        await orchestrator.prepare()
        await orchestrator.request_objects({(sha, "refs/heads/master")})
        await orchestrator.close()
    """

    def __init__(
        self,
        dht: DHT,
        transfer: TransferEngine,
        git: GitRunner,
        peer_id: Optional[bytes] = None,
    ):
        self.dht = dht
        self.transfer = transfer
        self.git = git
        self.peer_id = peer_id or generate_peer_id()

        self.goals: Dict[str, FetchGoal] = {}
        self._pending = 0
        self._completions = 0
        self._all_issued = False
        self._done = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._subscribed = False

    @property
    def pending_count(self) -> int:
        return self._pending

    @property
    def all_issued(self) -> bool:
        return self._all_issued

    async def start(self) -> None:
        if not self._subscribed:
            self.dht.subscribe_peers(self._on_peer)
            self._subscribed = True

    async def prepare(self) -> None:
        """
        Start the transfer engine and listen for peers.

        Raises:
            TransferError: the transfer engine cannot run
        """
        await self.transfer.start()
        await self.start()

    async def request(self, object_id: str, branch: str) -> FetchGoal:
        """
        Register interest in ``object_id`` for ``branch``.

        Only the first request for an id looks it up; later ones just add
        their branch to the goal.
        """
        branch = normalize_branch(branch)
        goal = self.goals.get(object_id)
        if goal is not None:
            goal.branches.add(branch)
            logger.debug(f"[FETCH] {object_id} already requested, adding branch {branch}")
            return goal

        goal = FetchGoal(object_id=object_id, branches={branch})
        self.goals[object_id] = goal
        logger.info(f"[FETCH] Looking up {object_id} for {branch}")

        try:
            found = await self.dht.lookup(bytes.fromhex(object_id))
            logger.debug(f"[FETCH] Lookup for {object_id} reported {found} peers")
        except Exception as e:
            failure = LookupFailure(f"Lookup for {object_id} failed: {e}")
            logger.error(f"[FETCH] {failure}")
        return goal

    async def request_objects(self, wanted: Iterable[Tuple[str, str]]) -> None:
        """Request every pair and wait until all goals are indexed."""
        await self.start()
        self._all_issued = False
        self._done.clear()

        for object_id, branch in wanted:
            await self.request(object_id, branch)
        self._all_issued = True

        if not self.goals:
            return
        if self._pending == 0 and self._completions > 0:
            self._done.set()

        await self._done.wait()
        logger.info(f"[FETCH] All {len(self.goals)} objects fetched")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_peer(self, event: PeerEvent) -> None:
        goal = self.goals.get(event.object_id)
        if goal is None:
            return

        addr = event.addr
        if addr in goal.peers:
            return
        goal.peers.add(addr)

        if not goal.peer_seen:
            goal.peer_seen = True
            self._pending += 1
        logger.info(f"[FETCH] Peer {addr[0]}:{addr[1]} has {goal.object_id}")

        if goal.transfer_id is not None:
            return
        self._spawn(self._connect(goal, addr))

    async def _connect(self, goal: FetchGoal, addr: Address) -> None:
        try:
            wire = await open_wire(
                addr[0], addr[1],
                peer_id=self.peer_id,
                transfer_port=self.transfer.listen_port,
            )
        except OSError as e:
            logger.warning(f"[FETCH] Cannot connect to {addr[0]}:{addr[1]}: {e}")
            return

        async def on_transfer(transfer_id: str, ext: RequesterExtension) -> None:
            await self._on_transfer(goal, transfer_id, ext)

        wire.use(RequesterExtension(goal.object_id, on_transfer))
        goal.wires.append(wire)
        try:
            await wire.handshake(bytes.fromhex(goal.object_id))
        except (ConnectionError, OSError) as e:
            logger.warning(f"[FETCH] Handshake with {addr[0]}:{addr[1]} failed: {e}")
            await wire.close()
            return
        await wire.run()

    async def _on_transfer(self, goal: FetchGoal, transfer_id: str, ext: RequesterExtension) -> None:
        if goal.transfer_id is not None:
            logger.debug(f"[FETCH] Ignoring transfer {transfer_id} for {goal.object_id}, already have one")
            return
        goal.transfer_id = transfer_id

        peers: List[Address] = []
        address = ext.wire.address if ext.wire else None
        if address and ext.handshake and ext.handshake.transfer_port:
            peers.append((address[0], ext.handshake.transfer_port))

        self._spawn(self._download(goal, transfer_id, peers))

    async def _download(self, goal: FetchGoal, transfer_id: str, peers: List[Address]) -> None:
        logger.info(f"[FETCH] Downloading {transfer_id} for {goal.object_id}")
        try:
            path: Path = await self.transfer.download(transfer_id, peers)
        except Exception as e:
            error = e if isinstance(e, TransferError) else TransferError(str(e))
            logger.error(f"[FETCH] Transfer {transfer_id} for {goal.object_id} failed: {error}")
            return

        try:
            code = await self.git.index_pack(path)
        except OSError as e:
            logger.error(f"[FETCH] Cannot run git index-pack for {goal.object_id}: {e}")
            return

        if code != 0:
            failure = SubprocessFailure(["git", "index-pack", "--stdin", "-v", "--fix-thin"], code)
            logger.error(f"[FETCH] {failure} for {goal.object_id}")
        else:
            logger.info(f"[FETCH] Indexed pack for {goal.object_id}")

        goal.got = True
        self._complete_one(goal)
        for wire in goal.wires:
            await wire.close()

    def _complete_one(self, goal: FetchGoal) -> None:
        if goal.completed:
            return
        goal.completed = True
        if self._pending > 0:
            self._pending -= 1
        self._completions += 1
        if self._pending == 0 and self._all_issued:
            self._done.set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        if self._subscribed:
            self.dht.unsubscribe_peers(self._on_peer)
            self._subscribed = False
        for goal in self.goals.values():
            for wire in goal.wires:
                await wire.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
