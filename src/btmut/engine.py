"""
Torrent engine interface -- everything bt-mut asks of the swarm.

The sync core never computes info-hashes, talks to peers, or touches
the DHT itself. It drives an engine through four awaited calls:

    resolve(identifier, destination)   -> TorrentHandle
    snapshot_directory(path)           -> TorrentHandle
    publish(public_key, secret_key, info_hash, sequence) -> PublishResult
    generate_keypair(seed)             -> Keypair

Handles carry the engine's event stream (`wire`, `download`, `done`) as
an async iterator that callers consume or ignore.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Optional

from .models import FileEntry, Keypair, PublishResult, TorrentEvent

EVENT_WIRE = "wire"
EVENT_DOWNLOAD = "download"
EVENT_DONE = "done"


class TorrentHandle:
    """A live torrent: what it is, where it is, and what it is doing.

    Args:
        magnet_uri: Identifier for the torrent. The orchestrator replaces
            it with the pointer identifier once the sync is confirmed.
        info_hash: Snapshot info-hash.
        files: Files of the snapshot.
        path: Local directory the torrent is bound to.
        public_key: Owner key when the torrent came from a mutable record.
    """

    def __init__(
        self,
        magnet_uri: str,
        info_hash: str,
        files: list[FileEntry],
        path: Optional[Path] = None,
        public_key: Optional[bytes] = None,
    ) -> None:
        self.magnet_uri = magnet_uri
        self.info_hash = info_hash
        self.files = files
        self.path = path
        self.public_key = public_key
        self.sequence: Optional[int] = None
        self.progress = 0.0
        self._queue: asyncio.Queue[Optional[TorrentEvent]] = asyncio.Queue()
        self._closed = False

    @property
    def length(self) -> int:
        return sum(f.length for f in self.files)

    def emit(self, kind: str, **detail) -> None:
        """Queue an event for whoever iterates `events()`."""
        if self._closed:
            return
        if kind == EVENT_DONE:
            self.progress = 1.0
        self._queue.put_nowait(TorrentEvent(kind=kind, detail=detail))

    def close(self) -> None:
        """End the event stream."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[TorrentEvent]:
        """Yield events until `done` or `close()`."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if event.kind == EVENT_DONE:
                return

    def __repr__(self) -> str:
        return f"TorrentHandle({self.magnet_uri!r}, files={len(self.files)})"


class TorrentEngine(ABC):
    """Abstract torrent engine consumed by the sync orchestrator."""

    @abstractmethod
    async def resolve(self, identifier: str, destination: Path) -> TorrentHandle:
        """Resolve an identifier and start fetching it into `destination`.

        Owner-extended identifiers are looked up in the DHT first; the
        returned handle carries the current info-hash and `public_key`.
        """

    @abstractmethod
    async def snapshot_directory(self, path: Path) -> TorrentHandle:
        """Build (and seed) a snapshot of `path`, excluding the `.bt` file."""

    @abstractmethod
    async def publish(
        self,
        public_key: bytes,
        secret_key: bytes,
        info_hash: str,
        sequence: Optional[int] = None,
    ) -> PublishResult:
        """Publish `info_hash` as the current value of a mutable record.

        Args:
            public_key: Owner key.
            secret_key: Matching secret key, used to sign the record.
            info_hash: Snapshot to point at.
            sequence: Suggested sequence. The engine may assign a higher one.
        """

    @abstractmethod
    def generate_keypair(self, seed: Optional[bytes] = None) -> Keypair:
        """Create a signing keypair, deterministically when seeded."""

    async def close(self) -> None:
        """Release engine resources."""
