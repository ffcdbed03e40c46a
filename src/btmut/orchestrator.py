"""
Sync Orchestrator -- decides what a sync of a folder means, then does it.

    no .bt file                      -> create a publication we own
    .bt, plain magnet                -> pull that snapshot
    .bt, owner key, secret known     -> push the folder as a new version
    .bt, owner key, secret unknown   -> pull the owner's latest version

Ordering rules:
    - The sequence guard approves a version before the engine publishes it,
      and the engine's sequence is fed back before the push counts.
    - The `.bt` pointer is written last, only after the engine confirms.
      A failed or cancelled operation leaves the old pointer untouched.
    - One operation per directory at a time; directories never wait on
      each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Optional, TypeVar

from . import magnet, pointer
from .audit import audit_event
from .config import BtMutConfig
from .engine import TorrentEngine, TorrentHandle
from .errors import (
    BtMutError,
    EngineFailureError,
    ImmutablePublicationError,
    InvalidArgumentsError,
    MalformedIdentifierError,
    NotInitializedError,
    PointerCorruptedError,
    SequenceConflictError,
)
from .keyvault import KeyVault
from .models import Keypair, MagnetInfo, SyncOptions, SyncPhase
from .sequence import SequenceGuard

logger = logging.getLogger("btmut.orchestrator")

T = TypeVar("T")

HISTORY_LIMIT = 64


class SyncOrchestrator:
    """Drives sync, push and pull for any number of directories.

    Args:
        engine: Torrent engine used for snapshots, publishing and fetching.
        config: Resolved configuration (secret storage, state directory).
        vault: Key vault. Defaults to one over `config.secret_storage`.
        guard: Sequence guard. Defaults to one persisted in `config.state_dir`.
    """

    def __init__(
        self,
        engine: TorrentEngine,
        config: BtMutConfig,
        vault: Optional[KeyVault] = None,
        guard: Optional[SequenceGuard] = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.vault = vault or KeyVault(config.secret_storage)
        self.guard = guard or SequenceGuard(config.state_dir)
        self._history: dict[Path, deque[SyncPhase]] = {}
        self._locks: dict[Path, asyncio.Lock] = {}
        self._lock_users: dict[Path, int] = {}

    # ------------------------------------------------------------------
    # Phase bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _key(directory: Path) -> Path:
        return Path(directory).expanduser().resolve()

    def phase(self, directory: Path) -> SyncPhase:
        """Last phase reached by `directory` in this process."""
        return self.history(directory)[-1]

    def history(self, directory: Path) -> list[SyncPhase]:
        """Phases `directory` went through, oldest first.

        Only the last `HISTORY_LIMIT` transitions are kept.
        """
        return list(self._history.get(self._key(directory), [SyncPhase.UNINITIALIZED]))

    def forget(self, directory: Path) -> None:
        """Drop the phase history kept for `directory`."""
        self._history.pop(self._key(directory), None)

    def _enter(self, key: Path, phase: SyncPhase) -> None:
        trail = self._history.get(key)
        if trail is None:
            trail = self._history[key] = deque(
                [SyncPhase.UNINITIALIZED], maxlen=HISTORY_LIMIT
            )
        if trail[-1] != phase:
            trail.append(phase)
            logger.debug("%s -> %s", key, phase.value)

    @asynccontextmanager
    async def _exclusive(self, key: Path) -> AsyncIterator[None]:
        """Hold the directory's lock; the lock is dropped once nobody needs it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _engine(self, what: str, call: Awaitable[T]) -> T:
        """Await an engine call, wrapping foreign errors as EngineFailureError."""
        try:
            return await call
        except BtMutError:
            raise
        except Exception as exc:
            raise EngineFailureError(f"{what} failed: {exc}") from exc

    def _generate_keypair(self, seed: Optional[bytes]) -> Keypair:
        try:
            return self.engine.generate_keypair(seed)
        except BtMutError:
            raise
        except Exception as exc:
            raise EngineFailureError(f"Keypair generation failed: {exc}") from exc

    async def _audit(self, event_type: str, detail: str, **metadata) -> None:
        await asyncio.to_thread(
            audit_event, self.config.state_dir, event_type, detail, metadata
        )

    async def _read_pointer(self, key: Path) -> Optional[tuple[str, MagnetInfo]]:
        if not await asyncio.to_thread(pointer.exists, key):
            return None
        text = await asyncio.to_thread(pointer.read, key)
        try:
            return text, magnet.decode(text)
        except MalformedIdentifierError as exc:
            self._enter(key, SyncPhase.ERROR)
            raise PointerCorruptedError(f"Unreadable .bt file in {key}: {exc}") from exc

    @staticmethod
    def _supplied(options: Optional[SyncOptions]) -> Optional[Keypair]:
        return options.keypair() if options is not None else None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def is_initialized(self, directory: Path) -> bool:
        """True once the directory has a `.bt` pointer."""
        return await asyncio.to_thread(pointer.exists, self._key(directory))

    async def sync(
        self,
        directory: Path,
        identifier: Optional[str] = None,
        options: Optional[SyncOptions] = None,
    ) -> TorrentHandle:
        """Bring `directory` in line with its publication.

        Args:
            directory: Folder to sync.
            identifier: Magnet to pull into the folder. Omit to let the
                folder's `.bt` file decide.
            options: Keypair or seed for a publication created here.

        Returns:
            TorrentHandle: The live torrent; `magnet_uri` is what `.bt` holds.
        """
        key = self._key(directory)
        async with self._exclusive(key):
            if identifier:
                return await self._pull(key, identifier)

            current = await self._read_pointer(key)
            if current is None:
                return await self._create(key, options)

            text, info = current
            if not info.is_owned:
                return await self._pull(key, text)

            supplied = self._supplied(options)
            if await asyncio.to_thread(self.vault.has, info.public_key, supplied):
                return await self._update(key, info.public_key, supplied)

            logger.info("No secret for %s, syncing read-only", info.public_key.hex())
            return await self._pull(key, text)

    async def push(
        self,
        directory: Path,
        options: Optional[SyncOptions] = None,
    ) -> TorrentHandle:
        """Publish the folder's current contents as a new version.

        Untracked folders get a new publication first.

        Raises:
            ImmutablePublicationError: The folder tracks a plain magnet.
            KeyNotFoundError: The folder's publication belongs to someone else.
            InvalidArgumentsError: Half a keypair, or a keypair for another key.
            SequenceConflictError: Another writer published a newer version.
        """
        key = self._key(directory)
        async with self._exclusive(key):
            current = await self._read_pointer(key)
            if current is None:
                return await self._create(key, options)

            text, info = current
            if not info.is_owned:
                raise ImmutablePublicationError(
                    f"{key} tracks an immutable torrent ({text}); nothing to push"
                )
            supplied = self._supplied(options)
            if supplied is not None and supplied.public_key != info.public_key:
                raise InvalidArgumentsError(
                    f"Supplied key {supplied.public_key_hex} does not own {key}"
                )
            return await self._update(key, info.public_key, supplied)

    async def pull(
        self,
        directory: Path,
        identifier: Optional[str] = None,
    ) -> TorrentHandle:
        """Fetch a published snapshot into the folder.

        Raises:
            NotInitializedError: No identifier given and no `.bt` file.
        """
        key = self._key(directory)
        async with self._exclusive(key):
            if not identifier:
                current = await self._read_pointer(key)
                if current is None:
                    raise NotInitializedError(
                        f"{key} has no .bt file; pass a magnet link to pull"
                    )
                identifier = current[0]
            return await self._pull(key, identifier)

    async def close(self) -> None:
        await self.engine.close()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _create(self, key: Path, options: Optional[SyncOptions]) -> TorrentHandle:
        previous = self.phase(key)
        self._enter(key, SyncPhase.CREATING)
        new_secret = False
        try:
            keypair = self._supplied(options)
            if keypair is None:
                keypair = self._generate_keypair(options.seed if options else None)
            new_secret = not await asyncio.to_thread(self.vault.has, keypair.public_key)
            await asyncio.to_thread(
                self.vault.save, keypair.public_key, keypair.secret_key
            )
            handle = await self._publish(key, keypair.public_key, keypair.secret_key)
        except BaseException:
            # A secret only joins the vault with the publication it signed.
            if new_secret and not pointer.exists(key):
                self.vault.discard(keypair.public_key)
            self._enter(key, previous)
            raise

        await self._audit(
            "CREATE",
            f"New publication for {key}",
            directory=str(key),
            public_key=keypair.public_key_hex,
        )
        logger.info("Created publication %s for %s", keypair.public_key_hex, key)
        return handle

    async def _update(
        self,
        key: Path,
        public_key: bytes,
        supplied: Optional[Keypair],
    ) -> TorrentHandle:
        secret_key = await asyncio.to_thread(self.vault.load, public_key, supplied)
        return await self._publish(key, public_key, secret_key)

    async def _publish(self, key: Path, public_key: bytes, secret_key: bytes) -> TorrentHandle:
        key_hex = public_key.hex()
        proposed = await asyncio.to_thread(self.guard.next_sequence, public_key)

        handle = await self._engine(
            "Snapshot", self.engine.snapshot_directory(key)
        )

        if not await asyncio.to_thread(self.guard.admits, public_key, proposed):
            latest = await asyncio.to_thread(self.guard.latest, public_key)
            await self._audit("CONFLICT", f"Stale sequence {proposed} for {key_hex}")
            raise SequenceConflictError(key_hex, proposed, latest)

        result = await self._engine(
            "Publish",
            self.engine.publish(public_key, secret_key, handle.info_hash, proposed),
        )

        if not await asyncio.to_thread(self.guard.accept, public_key, result.sequence):
            latest = await asyncio.to_thread(self.guard.latest, public_key)
            await self._audit(
                "CONFLICT",
                f"Engine returned stale sequence {result.sequence} for {key_hex}",
                info_hash=handle.info_hash,
            )
            raise SequenceConflictError(key_hex, result.sequence, latest)

        identifier = magnet.with_owner(result.identifier, public_key)
        await asyncio.to_thread(pointer.write, key, identifier)

        handle.magnet_uri = identifier
        handle.public_key = public_key
        handle.sequence = result.sequence
        self._enter(key, SyncPhase.OWNED_READY)
        await self._audit(
            "PUSH",
            f"Published {handle.info_hash} for {key_hex}",
            directory=str(key),
            info_hash=handle.info_hash,
            sequence=result.sequence,
        )
        return handle

    async def _pull(self, key: Path, identifier: str) -> TorrentHandle:
        info = magnet.decode(identifier)
        handle = await self._engine("Resolve", self.engine.resolve(identifier, key))

        public_key = handle.public_key or info.public_key
        if public_key:
            tracked = magnet.with_owner(handle.magnet_uri, public_key)
            phase = SyncPhase.TRACKING_MUTABLE
        else:
            tracked = handle.magnet_uri
            phase = SyncPhase.TRACKING_IMMUTABLE

        await asyncio.to_thread(key.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(pointer.write, key, tracked)

        handle.magnet_uri = tracked
        handle.public_key = public_key
        self._enter(key, phase)
        await self._audit(
            "PULL",
            f"Synced {key} to {handle.info_hash}",
            directory=str(key),
            identifier=tracked,
        )
        return handle
