"""Shared test fixtures for bt-mut."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Optional

import pytest

from btmut import BT_FILE, magnet
from btmut.config import BtMutConfig
from btmut.engine import EVENT_DONE, TorrentEngine, TorrentHandle
from btmut.local_engine import LocalEngine
from btmut.models import FileEntry, Keypair, MagnetInfo, PublishResult
from btmut.orchestrator import SyncOrchestrator


class FakeEngine(TorrentEngine):
    """In-memory engine that records every call.

    Knobs:
        forced_sequence: Return this sequence from publish regardless of hint.
        fail_publish / fail_resolve: Raise RuntimeError from that call.
    """

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.records: dict[bytes, tuple[str, int]] = {}
        self.forced_sequence: Optional[int] = None
        self.fail_publish = False
        self.fail_resolve = False

    def generate_keypair(self, seed: Optional[bytes] = None) -> Keypair:
        self.calls.append(("generate_keypair", seed))
        material = seed if seed is not None else os.urandom(32)
        return Keypair(
            public_key=hashlib.sha256(b"pub" + material).digest(),
            secret_key=hashlib.sha256(b"sec" + material).digest(),
        )

    async def snapshot_directory(self, path: Path) -> TorrentHandle:
        self.calls.append(("snapshot_directory", Path(path)))
        h = hashlib.sha1()
        files = []
        for p in sorted(Path(path).rglob("*")):
            if p.is_file() and p.name != BT_FILE:
                data = p.read_bytes()
                rel = p.relative_to(path).as_posix()
                h.update(rel.encode() + b"\0" + data)
                files.append(
                    FileEntry(path=rel, length=len(data), sha1=hashlib.sha1(data).hexdigest())
                )
        info_hash = h.hexdigest()
        handle = TorrentHandle(
            magnet.encode(MagnetInfo(info_hash=info_hash)), info_hash, files, path=Path(path)
        )
        handle.emit(EVENT_DONE)
        return handle

    async def publish(
        self,
        public_key: bytes,
        secret_key: bytes,
        info_hash: str,
        sequence: Optional[int] = None,
    ) -> PublishResult:
        self.calls.append(("publish", public_key, info_hash, sequence))
        if self.fail_publish:
            raise RuntimeError("DHT put timed out")
        seq = self.forced_sequence if self.forced_sequence is not None else (sequence or 0)
        self.records[public_key] = (info_hash, seq)
        return PublishResult(
            identifier=magnet.encode(MagnetInfo(info_hash=info_hash, public_key=public_key)),
            sequence=seq,
        )

    async def resolve(self, identifier: str, destination: Path) -> TorrentHandle:
        self.calls.append(("resolve", identifier, Path(destination)))
        if self.fail_resolve:
            raise RuntimeError("no peers")
        info = magnet.decode(identifier)
        if info.is_owned:
            info_hash, _ = self.records.get(
                info.public_key, (hashlib.sha1(info.public_key).hexdigest(), 0)
            )
        else:
            info_hash = info.info_hash
        Path(destination).mkdir(parents=True, exist_ok=True)
        handle = TorrentHandle(
            magnet.encode(MagnetInfo(info_hash=info_hash)),
            info_hash,
            [],
            path=Path(destination),
            public_key=info.public_key,
        )
        handle.emit(EVENT_DONE)
        return handle

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def config(tmp_path: Path) -> BtMutConfig:
    """Config with secrets, state and store under one temp root."""
    return BtMutConfig.for_root(tmp_path / "btmut-home")


@pytest.fixture
def folder(tmp_path: Path) -> Path:
    """A small folder to publish."""
    d = tmp_path / "notes"
    d.mkdir()
    (d / "readme.txt").write_text("hello swarm\n", encoding="utf-8")
    (d / "sub").mkdir()
    (d / "sub" / "data.bin").write_bytes(b"\x00\x01\x02" * 100)
    return d


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def orchestrator(fake_engine: FakeEngine, config: BtMutConfig) -> SyncOrchestrator:
    return SyncOrchestrator(fake_engine, config)


@pytest.fixture
def local_engine(config: BtMutConfig) -> LocalEngine:
    return LocalEngine(config.engine_store)
