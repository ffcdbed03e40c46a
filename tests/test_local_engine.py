"""
Tests for the loopback engine and for full owner/follower round trips
through the orchestrator on top of it.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from btmut import BT_FILE, magnet, pointer
from btmut.config import BtMutConfig
from btmut.engine import EVENT_DONE, EVENT_DOWNLOAD
from btmut.errors import EngineFailureError, KeyNotFoundError
from btmut.local_engine import LocalEngine
from btmut.models import SyncOptions, SyncPhase
from btmut.orchestrator import SyncOrchestrator


class TestKeypairs:
    """Ed25519 keypairs from the engine."""

    def test_sizes(self, local_engine: LocalEngine):
        pair = local_engine.generate_keypair()
        assert len(pair.public_key) == 32
        assert len(pair.secret_key) == 32

    def test_seed_is_deterministic(self, local_engine: LocalEngine):
        assert local_engine.generate_keypair(b"seed") == local_engine.generate_keypair(b"seed")
        assert local_engine.generate_keypair(b"a") != local_engine.generate_keypair(b"b")

    def test_random_without_seed(self, local_engine: LocalEngine):
        assert local_engine.generate_keypair() != local_engine.generate_keypair()


class TestSnapshots:
    """Content-addressed snapshots."""

    @pytest.mark.asyncio
    async def test_snapshot_lists_files(self, local_engine, folder):
        handle = await local_engine.snapshot_directory(folder)
        assert [f.path for f in handle.files] == ["readme.txt", "sub/data.bin"]
        assert handle.length == len("hello swarm\n") + 300
        assert len(handle.info_hash) == 40

    @pytest.mark.asyncio
    async def test_pointer_excluded(self, local_engine, folder):
        before = await local_engine.snapshot_directory(folder)
        pointer.write(folder, "magnet:?xs=urn:btpk:" + "cd" * 32)
        after = await local_engine.snapshot_directory(folder)
        assert after.info_hash == before.info_hash
        assert BT_FILE not in [f.path for f in after.files]

    @pytest.mark.asyncio
    async def test_same_content_same_hash(self, local_engine, folder, tmp_path):
        twin = tmp_path / "twin"
        twin.mkdir()
        (twin / "readme.txt").write_text("hello swarm\n", encoding="utf-8")
        (twin / "sub").mkdir()
        (twin / "sub" / "data.bin").write_bytes(b"\x00\x01\x02" * 100)

        a = await local_engine.snapshot_directory(folder)
        b = await local_engine.snapshot_directory(twin)
        assert a.info_hash == b.info_hash

    @pytest.mark.asyncio
    async def test_content_change_changes_hash(self, local_engine, folder):
        a = await local_engine.snapshot_directory(folder)
        (folder / "readme.txt").write_text("edited")
        b = await local_engine.snapshot_directory(folder)
        assert a.info_hash != b.info_hash

    @pytest.mark.asyncio
    async def test_snapshot_is_seeding(self, local_engine, folder):
        handle = await local_engine.snapshot_directory(folder)
        assert [e.kind async for e in handle.events()] == [EVENT_DONE]
        assert handle.progress == 1.0

    @pytest.mark.asyncio
    async def test_missing_directory(self, local_engine, tmp_path):
        with pytest.raises(EngineFailureError):
            await local_engine.snapshot_directory(tmp_path / "nope")


class TestPublishResolve:
    """Signed records and verified fetches."""

    @pytest.mark.asyncio
    async def test_publish_then_resolve(self, local_engine, folder, tmp_path):
        pair = local_engine.generate_keypair(b"owner")
        snap = await local_engine.snapshot_directory(folder)

        result = await local_engine.publish(pair.public_key, pair.secret_key, snap.info_hash, 0)
        assert result.sequence == 0
        assert magnet.decode(result.identifier).public_key == pair.public_key

        dest = tmp_path / "dest"
        handle = await local_engine.resolve(magnet.owned_identifier(pair.public_key), dest)
        assert handle.info_hash == snap.info_hash
        assert handle.public_key == pair.public_key
        assert handle.sequence == 0
        assert (dest / "readme.txt").read_text(encoding="utf-8") == "hello swarm\n"
        assert (dest / "sub" / "data.bin").read_bytes() == b"\x00\x01\x02" * 100

        kinds = [e.kind async for e in handle.events()]
        assert kinds == [EVENT_DOWNLOAD, EVENT_DOWNLOAD, EVENT_DONE]

    @pytest.mark.asyncio
    async def test_resolve_immutable(self, local_engine, folder, tmp_path):
        snap = await local_engine.snapshot_directory(folder)
        handle = await local_engine.resolve(f"magnet:?xt=urn:btih:{snap.info_hash}", tmp_path / "d")
        assert handle.public_key is None
        assert (tmp_path / "d" / "readme.txt").exists()

    @pytest.mark.asyncio
    async def test_sequence_assigned_above_stored(self, local_engine, folder):
        pair = local_engine.generate_keypair(b"owner")
        snap = await local_engine.snapshot_directory(folder)
        await local_engine.publish(pair.public_key, pair.secret_key, snap.info_hash, 4)
        result = await local_engine.publish(pair.public_key, pair.secret_key, snap.info_hash, 0)
        assert result.sequence == 5

    @pytest.mark.asyncio
    async def test_wrong_secret_refused(self, local_engine, folder):
        owner = local_engine.generate_keypair(b"owner")
        intruder = local_engine.generate_keypair(b"intruder")
        snap = await local_engine.snapshot_directory(folder)
        with pytest.raises(EngineFailureError):
            await local_engine.publish(owner.public_key, intruder.secret_key, snap.info_hash)

    @pytest.mark.asyncio
    async def test_unknown_info_hash_refused(self, local_engine):
        pair = local_engine.generate_keypair()
        with pytest.raises(EngineFailureError):
            await local_engine.publish(pair.public_key, pair.secret_key, "0" * 40)

    @pytest.mark.asyncio
    async def test_unpublished_key(self, local_engine, tmp_path):
        with pytest.raises(EngineFailureError):
            await local_engine.resolve("magnet:?xs=urn:btpk:" + "ef" * 32, tmp_path / "d")

    @pytest.mark.asyncio
    async def test_tampered_record_refused(self, local_engine, folder, tmp_path):
        pair = local_engine.generate_keypair(b"owner")
        a = await local_engine.snapshot_directory(folder)
        await local_engine.publish(pair.public_key, pair.secret_key, a.info_hash)
        (folder / "readme.txt").write_text("evil")
        b = await local_engine.snapshot_directory(folder)

        record_path = local_engine.dht_dir / f"{pair.public_key.hex()}.json"
        record = json.loads(record_path.read_text())
        record["info_hash"] = b.info_hash
        record_path.write_text(json.dumps(record))

        with pytest.raises(EngineFailureError):
            await local_engine.resolve(magnet.owned_identifier(pair.public_key), tmp_path / "d")

    @pytest.mark.asyncio
    async def test_corrupt_object_refused(self, local_engine, folder, tmp_path):
        snap = await local_engine.snapshot_directory(folder)
        readme = next(f for f in snap.files if f.path == "readme.txt")
        (local_engine.objects_dir / readme.sha1).write_text("bit rot")
        with pytest.raises(EngineFailureError):
            await local_engine.resolve(f"magnet:?xt=urn:btih:{snap.info_hash}", tmp_path / "d")


class TestOwnerAndFollower:
    """Two parties sharing a store but not secrets."""

    @pytest.fixture
    def follower_config(self, config: BtMutConfig, tmp_path: Path) -> BtMutConfig:
        return config.model_copy(
            update={
                "secret_storage": tmp_path / "follower-secrets",
                "state_dir": tmp_path / "follower-state",
            }
        )

    @pytest.mark.asyncio
    async def test_round_trip(self, config, follower_config, folder, tmp_path):
        owner = SyncOrchestrator(LocalEngine(config.engine_store), config)
        follower = SyncOrchestrator(LocalEngine(config.engine_store), follower_config)
        copy = tmp_path / "copy"

        created = await owner.sync(folder)
        public_key = created.public_key
        share = magnet.owned_identifier(public_key)

        await follower.sync(copy, share)
        assert (copy / "readme.txt").read_text(encoding="utf-8") == "hello swarm\n"
        assert follower.phase(copy) == SyncPhase.TRACKING_MUTABLE
        assert magnet.decode(pointer.read(copy)).public_key == public_key

        (folder / "readme.txt").write_text("second edition\n", encoding="utf-8")
        updated = await owner.sync(folder)
        assert updated.sequence == 1

        refreshed = await follower.sync(copy)
        assert refreshed.info_hash == updated.info_hash
        assert (copy / "readme.txt").read_text(encoding="utf-8") == "second edition\n"

        with pytest.raises(KeyNotFoundError):
            await follower.push(copy)

    @pytest.mark.asyncio
    async def test_owner_on_new_machine_with_same_seed(self, config, follower_config, folder, tmp_path):
        owner = SyncOrchestrator(LocalEngine(config.engine_store), config)
        await owner.sync(folder, options=SyncOptions(seed="laptop"))

        other_machine = SyncOrchestrator(LocalEngine(config.engine_store), follower_config)
        second = tmp_path / "second"
        second.mkdir()
        (second / "other.txt").write_text("from elsewhere")
        handle = await other_machine.push(second, SyncOptions(seed="laptop"))

        assert handle.public_key == magnet.decode(pointer.read(folder)).public_key
        assert handle.sequence == 1

    @pytest.mark.asyncio
    async def test_mismatched_pair_is_not_kept(self, config, follower_config, folder, tmp_path):
        engine = LocalEngine(config.engine_store)
        owner = SyncOrchestrator(engine, config)
        await owner.sync(folder, options=SyncOptions(seed="owner"))
        share = magnet.owned_identifier(magnet.decode(pointer.read(folder)).public_key)

        good = engine.generate_keypair(b"owner")
        wrong = engine.generate_keypair(b"someone else")
        mine = tmp_path / "mine"
        mine.mkdir()
        (mine / "a.txt").write_text("a")

        other_machine = SyncOrchestrator(LocalEngine(config.engine_store), follower_config)
        with pytest.raises(EngineFailureError):
            await other_machine.push(
                mine, SyncOptions(public_key=good.public_key, secret_key=wrong.secret_key)
            )
        assert not other_machine.vault.has(good.public_key)

        copy = tmp_path / "copy"
        await other_machine.sync(copy, share)
        await other_machine.sync(copy)
        assert other_machine.phase(copy) == SyncPhase.TRACKING_MUTABLE

        handle = await other_machine.push(
            mine, SyncOptions(public_key=good.public_key, secret_key=good.secret_key)
        )
        assert handle.public_key == good.public_key
