"""
Fetch Orchestrator Unit Tests
=============================

[UNIT] Goals, pending accounting and the requester flow against providers
served over localhost sockets.
"""

import asyncio
from pathlib import Path

import pytest

from gittorrent.events import PeerEvent
from gittorrent.fetch import FetchOrchestrator, normalize_branch
from gittorrent.provider import AnnouncedObject, PackProvider
from gittorrent.wire import Wire

from tests.conftest import FakeGit, FakeTransfer


OBJECT_ID = "1" * 40
OTHER_ID = "2" * 40


@pytest.fixture
def orchestrator(fake_dht, fake_transfer, fake_git):
    return FetchOrchestrator(fake_dht, fake_transfer, fake_git)


@pytest.fixture
async def serve():
    """Start a wire server in front of a PackProvider, returns its port."""
    servers = []

    async def _serve(provider: PackProvider, transfer_port: int = 6883) -> int:
        async def on_connect(reader, writer):
            wire = Wire(reader, writer, transfer_port=transfer_port)
            wire.use(provider.extension())
            await wire.run()

        server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield _serve
    for server in servers:
        server.close()


def make_provider(transfer_swarm, temp_dir: Path, *object_ids: str) -> PackProvider:
    index = {oid: AnnouncedObject(repo_path=temp_dir / "repo") for oid in object_ids}
    return PackProvider(
        FakeGit(),
        FakeTransfer(transfer_swarm, temp_dir / "provider", listen_port=6883),
        temp_dir / "packs",
        index=index,
    )


class TestNormalizeBranch:

    @pytest.mark.parametrize("ref,branch", [
        ("refs/heads/master", "master"),
        ("refs/heads/feature/x", "feature/x"),
        ("refs/tags/v1", "tags/v1"),
        ("refs/remotes/origin/head", "remotes/origin"),
        ("master", "master"),
    ])
    def test_normalize(self, ref, branch):
        assert normalize_branch(ref) == branch


class TestGoals:

    async def test_duplicate_requests_share_one_goal(self, orchestrator, fake_dht):
        first = await orchestrator.request(OBJECT_ID, "refs/heads/master")
        second = await orchestrator.request(OBJECT_ID, "refs/heads/dev")

        assert first is second
        assert len(orchestrator.goals) == 1
        assert fake_dht.lookups == [bytes.fromhex(OBJECT_ID)]
        assert first.branches == {"master", "dev"}

    async def test_prepare_starts_transfer_and_listens(self, orchestrator, fake_dht, fake_transfer):
        await orchestrator.prepare()
        await orchestrator.prepare()

        assert fake_transfer.started
        assert len(fake_dht.peer_events) == 1
        await orchestrator.close()
        assert len(fake_dht.peer_events) == 0

    async def test_empty_batch_returns_immediately(self, orchestrator, async_timeout):
        await async_timeout(orchestrator.request_objects([]), 1)
        assert orchestrator.goals == {}

    async def test_lookup_failure_stalls_goal(self, orchestrator, fake_dht, caplog):
        fake_dht.fail_lookup = True
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orchestrator.request_objects([(OBJECT_ID, "master")]), 0.2)

        assert "lookup exploded" in caplog.text
        assert orchestrator.pending_count == 0
        await orchestrator.close()

    async def test_completion_is_counted_once(self, orchestrator):
        goal = await orchestrator.request(OBJECT_ID, "master")
        await orchestrator._on_peer(PeerEvent(("127.0.0.1", 1), bytes.fromhex(OBJECT_ID)))
        await orchestrator._on_peer(PeerEvent(("127.0.0.1", 2), bytes.fromhex(OBJECT_ID)))
        assert orchestrator.pending_count == 1

        orchestrator._complete_one(goal)
        orchestrator._complete_one(goal)
        assert orchestrator.pending_count == 0
        await orchestrator.close()

    async def test_peer_for_unknown_goal_ignored(self, orchestrator):
        await orchestrator._on_peer(PeerEvent(("127.0.0.1", 1), bytes.fromhex(OTHER_ID)))
        assert orchestrator.pending_count == 0


class TestFetchFlow:

    async def test_fetch_one_object(
        self, orchestrator, fake_dht, fake_transfer, fake_git, transfer_swarm, temp_dir, serve, async_timeout,
    ):
        port = await serve(make_provider(transfer_swarm, temp_dir, OBJECT_ID))
        await fake_dht.announce(bytes.fromhex(OBJECT_ID), port)

        await async_timeout(orchestrator.request_objects([(OBJECT_ID, "refs/heads/master")]))

        goal = orchestrator.goals[OBJECT_ID]
        assert goal.got and goal.completed
        assert orchestrator.pending_count == 0
        assert fake_git.indexed == [f"PACK {OBJECT_ID} ^None".encode()]
        transfer_id, peers = fake_transfer.downloads[0]
        assert transfer_id == goal.transfer_id
        assert peers == (("127.0.0.1", 6883),)
        await orchestrator.close()

    async def test_failed_index_pack_still_completes(
        self, orchestrator, fake_dht, fake_git, transfer_swarm, temp_dir, serve, async_timeout,
    ):
        fake_git.index_code = 128
        port = await serve(make_provider(transfer_swarm, temp_dir, OBJECT_ID))
        await fake_dht.announce(bytes.fromhex(OBJECT_ID), port)

        await async_timeout(orchestrator.request_objects([(OBJECT_ID, "master")]))
        assert orchestrator.pending_count == 0
        await orchestrator.close()

    async def test_two_peers_one_download(
        self, orchestrator, fake_dht, fake_transfer, transfer_swarm, temp_dir, serve, async_timeout,
    ):
        for _ in range(2):
            port = await serve(make_provider(transfer_swarm, temp_dir, OBJECT_ID))
            await fake_dht.announce(bytes.fromhex(OBJECT_ID), port)

        await async_timeout(orchestrator.request_objects([(OBJECT_ID, "master")]))

        assert len(orchestrator.goals[OBJECT_ID].peers) == 2
        assert len(fake_transfer.downloads) == 1
        await orchestrator.close()

    async def test_several_objects(
        self, orchestrator, fake_dht, fake_git, transfer_swarm, temp_dir, serve, async_timeout,
    ):
        port = await serve(make_provider(transfer_swarm, temp_dir, OBJECT_ID, OTHER_ID))
        await fake_dht.announce(bytes.fromhex(OBJECT_ID), port)
        await fake_dht.announce(bytes.fromhex(OTHER_ID), port)

        await async_timeout(orchestrator.request_objects([
            (OBJECT_ID, "refs/heads/master"),
            (OTHER_ID, "refs/heads/dev"),
            (OBJECT_ID, "HEAD"),
        ]))

        assert len(fake_git.indexed) == 2
        assert orchestrator.goals[OBJECT_ID].branches == {"master", "HEAD"}
        await orchestrator.close()

    async def test_unserved_object_stalls(
        self, orchestrator, fake_dht, transfer_swarm, temp_dir, serve,
    ):
        port = await serve(make_provider(transfer_swarm, temp_dir))
        await fake_dht.announce(bytes.fromhex(OBJECT_ID), port)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orchestrator.request_objects([(OBJECT_ID, "master")]), 0.3)
        assert orchestrator.pending_count == 1
        await orchestrator.close()
