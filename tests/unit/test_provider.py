"""
Pack Provider Unit Tests
========================

[UNIT] handle_generate_pack: unknown ids, thin packs, seed cache, concurrent
requests, failures.
"""

import asyncio

import pytest

from gittorrent.extension import ProviderExtension
from gittorrent.provider import AnnouncedObject, PackProvider, pack_path


OBJECT_ID = "1" * 40
HEAD_ID = "2" * 40
OTHER_HEAD = "3" * 40


@pytest.fixture
def provider(fake_git, fake_transfer, temp_dir):
    return PackProvider(fake_git, fake_transfer, temp_dir / "packs")


class TestHandleGeneratePack:

    async def test_unknown_object_gets_no_reply(self, provider, fake_git, caplog):
        assert await provider.handle_generate_pack(OBJECT_ID) is None
        assert fake_git.pack_calls == []
        assert "unknown object" in caplog.text

    async def test_pack_is_thin_against_head(self, provider, fake_git, fake_transfer, temp_dir):
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo", head=HEAD_ID)})

        transfer_id = await provider.handle_generate_pack(OBJECT_ID)

        assert fake_git.pack_calls == [(str(temp_dir / "repo"), OBJECT_ID, HEAD_ID)]
        assert fake_transfer.seeds == [temp_dir / "packs" / f"{OBJECT_ID}-{HEAD_ID}.pack"]
        assert len(transfer_id) == 40

    async def test_head_itself_is_packed_whole(self, provider, fake_git, temp_dir):
        provider.update_index({HEAD_ID: AnnouncedObject(temp_dir / "repo", head=HEAD_ID)})
        await provider.handle_generate_pack(HEAD_ID)
        assert fake_git.pack_calls[0][2] is None

    async def test_repository_without_master(self, provider, fake_git, temp_dir):
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo", head=None)})
        await provider.handle_generate_pack(OBJECT_ID)
        assert fake_git.pack_calls[0][2] is None

    async def test_seeded_pack_reused(self, provider, fake_git, fake_transfer, temp_dir):
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo", head=HEAD_ID)})

        first = await provider.handle_generate_pack(OBJECT_ID)
        second = await provider.handle_generate_pack(OBJECT_ID)

        assert first == second
        assert len(fake_git.pack_calls) == 1
        assert len(fake_transfer.seeds) == 1

    async def test_concurrent_requests_share_one_pipeline(self, provider, fake_git, fake_transfer, temp_dir):
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo", head=HEAD_ID)})
        fake_git.pack_gate = asyncio.Event()

        both = asyncio.gather(
            provider.handle_generate_pack(OBJECT_ID),
            provider.handle_generate_pack(OBJECT_ID),
        )
        for _ in range(5):
            await asyncio.sleep(0)
        fake_git.pack_gate.set()
        first, second = await asyncio.wait_for(both, 2)

        assert first is not None
        assert first == second
        assert len(fake_git.pack_calls) == 1
        assert len(fake_transfer.seeds) == 1
        pack = temp_dir / "packs" / f"{OBJECT_ID}-{HEAD_ID}.pack"
        assert pack.read_bytes() == f"PACK {OBJECT_ID} ^{HEAD_ID}".encode()

    async def test_cancelled_requester_does_not_stop_pipeline(self, provider, fake_git, temp_dir):
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo")})
        fake_git.pack_gate = asyncio.Event()

        leaving = asyncio.ensure_future(provider.handle_generate_pack(OBJECT_ID))
        staying = asyncio.ensure_future(provider.handle_generate_pack(OBJECT_ID))
        await asyncio.sleep(0)
        leaving.cancel()
        fake_git.pack_gate.set()

        assert await asyncio.wait_for(staying, 2) is not None
        assert len(fake_git.pack_calls) == 1

    async def test_new_head_gets_its_own_pack_file(self, provider, fake_git, fake_transfer, temp_dir):
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo", head=HEAD_ID)})
        await provider.handle_generate_pack(OBJECT_ID)
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo", head=OTHER_HEAD)})
        await provider.handle_generate_pack(OBJECT_ID)

        assert len(fake_git.pack_calls) == 2
        assert fake_transfer.seeds == [
            pack_path(temp_dir / "packs", OBJECT_ID, HEAD_ID),
            pack_path(temp_dir / "packs", OBJECT_ID, OTHER_HEAD),
        ]
        assert fake_transfer.seeds[0].read_bytes() == f"PACK {OBJECT_ID} ^{HEAD_ID}".encode()

    async def test_failed_pack_objects_gets_no_reply(self, provider, fake_git, fake_transfer, temp_dir, caplog):
        fake_git.pack_code = 128
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "repo")})

        assert await provider.handle_generate_pack(OBJECT_ID) is None
        assert fake_transfer.seeds == []
        assert "code 128" in caplog.text

    async def test_index_replaced_wholesale(self, provider, temp_dir):
        provider.update_index({OBJECT_ID: AnnouncedObject(temp_dir / "a")})
        provider.update_index({HEAD_ID: AnnouncedObject(temp_dir / "b")})
        assert await provider.handle_generate_pack(OBJECT_ID) is None


class TestProviderExtension:

    def test_fresh_extension_per_connection(self, provider):
        first = provider.extension()
        second = provider.extension()
        assert isinstance(first, ProviderExtension)
        assert first is not second
        assert first.generate == provider.handle_generate_pack
