"""
Loopback engine -- a torrent engine backed by a local directory.

For offline use, shared drives, and tests. It keeps the same contract
as a networked engine: snapshots are content-addressed, mutable records
are signed BEP 46 style, and resolving verifies every signature and
file hash before anything lands in the destination.

Store layout:
    <store>/
    ├── objects/<sha1>              # file contents, content-addressed
    ├── torrents/<info_hash>.json   # snapshot manifest (files + hashes)
    └── dht/<public_key_hex>.json   # {"info_hash", "seq", "sig"}

The info-hash is the SHA-1 of the canonical JSON manifest. The record
signature covers `3:seqi<seq>e1:v20:<raw info-hash>`, the bencoded
form BEP 46 signs.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from . import BT_FILE
from . import magnet
from ._atomic import atomic_write_bytes
from .engine import EVENT_DONE, EVENT_DOWNLOAD, TorrentEngine, TorrentHandle
from .errors import EngineFailureError, MalformedIdentifierError
from .models import FileEntry, Keypair, MagnetInfo, PublishResult

logger = logging.getLogger("btmut.local_engine")

CHUNK_SIZE = 65536


def _sha1_file(path: Path) -> str:
    h = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def _is_excluded(name: str) -> bool:
    """The pointer file and its in-flight temp copies never join a snapshot."""
    return name == BT_FILE or (name.startswith(f".{BT_FILE}.") and name.endswith(".tmp"))


def _raw_info_hash(info_hash: str) -> bytes:
    if len(info_hash) == 40:
        return bytes.fromhex(info_hash)
    return base64.b32decode(info_hash.upper())


def _record_message(sequence: int, info_hash: str) -> bytes:
    value = _raw_info_hash(info_hash)
    return b"3:seqi%de1:v%d:" % (sequence, len(value)) + value


def _private_key(secret_key: bytes) -> Ed25519PrivateKey:
    try:
        return Ed25519PrivateKey.from_private_bytes(secret_key)
    except ValueError as exc:
        raise EngineFailureError("Secret key is not a valid Ed25519 key") from exc


def _public_bytes(private: Ed25519PrivateKey) -> bytes:
    return private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


class LocalEngine(TorrentEngine):
    """Torrent engine over a local store directory.

    Args:
        store: Root of the loopback store. Created if absent.
    """

    def __init__(self, store: Path) -> None:
        self.store = Path(store).expanduser()
        self.objects_dir = self.store / "objects"
        self.torrents_dir = self.store / "torrents"
        self.dht_dir = self.store / "dht"
        for d in (self.objects_dir, self.torrents_dir, self.dht_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def generate_keypair(self, seed: Optional[bytes] = None) -> Keypair:
        if seed is not None:
            private = Ed25519PrivateKey.from_private_bytes(hashlib.sha256(seed).digest())
        else:
            private = Ed25519PrivateKey.generate()
        return Keypair(
            public_key=_public_bytes(private),
            secret_key=private.private_bytes(
                Encoding.Raw, PrivateFormat.Raw, NoEncryption()
            ),
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _store_object(self, path: Path) -> FileEntry:
        digest = _sha1_file(path)
        target = self.objects_dir / digest
        if not target.exists():
            tmp = self.objects_dir / f".{digest}.{os.getpid()}.tmp"
            shutil.copyfile(path, tmp)
            tmp.replace(target)
        return FileEntry(path="", length=path.stat().st_size, sha1=digest)

    def _snapshot(self, root: Path) -> tuple[str, list[FileEntry]]:
        if not root.is_dir():
            raise EngineFailureError(f"Not a directory: {root}")

        files: list[FileEntry] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for fname in sorted(filenames):
                if _is_excluded(fname):
                    continue
                full_path = Path(dirpath) / fname
                entry = self._store_object(full_path)
                rel = full_path.relative_to(root).as_posix()
                files.append(entry.model_copy(update={"path": rel}))

        files.sort(key=lambda f: f.path)
        manifest = json.dumps(
            {"files": [f.model_dump() for f in files]},
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
        info_hash = hashlib.sha1(manifest).hexdigest()
        atomic_write_bytes(self.torrents_dir / f"{info_hash}.json", manifest)
        return info_hash, files

    async def snapshot_directory(self, path: Path) -> TorrentHandle:
        root = Path(path)
        try:
            info_hash, files = await asyncio.to_thread(self._snapshot, root)
        except OSError as exc:
            raise EngineFailureError(f"Snapshot of {root} failed: {exc}") from exc

        magnet_uri = magnet.encode(
            MagnetInfo(info_hash=info_hash, extra=(("dn", quote(root.resolve().name)),))
        )
        handle = TorrentHandle(magnet_uri, info_hash, files, path=root)
        logger.info("Seeding %s (%d files) as %s", root, len(files), info_hash)
        handle.emit(EVENT_DONE, info_hash=info_hash)
        return handle

    # ------------------------------------------------------------------
    # Mutable records
    # ------------------------------------------------------------------

    def _record_path(self, public_key: bytes) -> Path:
        return self.dht_dir / f"{public_key.hex()}.json"

    def _read_record(self, public_key: bytes) -> Optional[dict]:
        path = self._record_path(public_key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise EngineFailureError(f"Corrupt DHT record for {public_key.hex()}") from exc

    def _publish(
        self,
        public_key: bytes,
        secret_key: bytes,
        info_hash: str,
        sequence: Optional[int],
    ) -> int:
        private = _private_key(secret_key)
        if _public_bytes(private) != public_key:
            raise EngineFailureError("Secret key does not match the public key")
        if not (self.torrents_dir / f"{info_hash}.json").exists():
            raise EngineFailureError(f"Unknown info-hash {info_hash}")

        seq = sequence if sequence is not None else 0
        current = self._read_record(public_key)
        if current is not None:
            seq = max(seq, int(current["seq"]) + 1)

        signature = private.sign(_record_message(seq, info_hash))
        record = {"info_hash": info_hash, "seq": seq, "sig": signature.hex()}
        atomic_write_bytes(
            self._record_path(public_key),
            json.dumps(record, indent=2).encode("utf-8"),
        )
        return seq

    async def publish(
        self,
        public_key: bytes,
        secret_key: bytes,
        info_hash: str,
        sequence: Optional[int] = None,
    ) -> PublishResult:
        seq = await asyncio.to_thread(
            self._publish, public_key, secret_key, info_hash, sequence
        )
        logger.info("Published %s -> %s (seq %d)", public_key.hex(), info_hash, seq)
        return PublishResult(
            identifier=magnet.owned_identifier(public_key, info_hash),
            sequence=seq,
        )

    def _lookup(self, public_key: bytes) -> tuple[str, int]:
        record = self._read_record(public_key)
        if record is None:
            raise EngineFailureError(f"No publication found for {public_key.hex()}")
        try:
            info_hash = record["info_hash"]
            seq = int(record["seq"])
            Ed25519PublicKey.from_public_bytes(public_key).verify(
                bytes.fromhex(record["sig"]), _record_message(seq, info_hash)
            )
        except (KeyError, ValueError, InvalidSignature) as exc:
            raise EngineFailureError(
                f"Invalid signature on publication {public_key.hex()}"
            ) from exc
        return info_hash, seq

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _load_manifest(self, info_hash: str) -> list[FileEntry]:
        path = self.torrents_dir / f"{info_hash}.json"
        if not path.exists():
            raise EngineFailureError(f"Unknown info-hash {info_hash}")
        data = json.loads(path.read_text(encoding="utf-8"))
        return [FileEntry.model_validate(f) for f in data["files"]]

    def _fetch_file(self, entry: FileEntry, destination: Path) -> bool:
        """Copy one file into place. Returns False if it was already current."""
        rel = PurePosixPath(entry.path)
        if rel.is_absolute() or ".." in rel.parts:
            raise EngineFailureError(f"Unsafe path in snapshot: {entry.path}")
        target = destination.joinpath(*rel.parts)
        if target.is_file() and _sha1_file(target) == entry.sha1:
            return False

        source = self.objects_dir / entry.sha1
        if not source.exists() or _sha1_file(source) != entry.sha1:
            raise EngineFailureError(f"Piece data missing or corrupt for {entry.path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.parent / f".{target.name}.{os.getpid()}.tmp"
        shutil.copyfile(source, tmp)
        tmp.replace(target)
        return True

    def _resolve(
        self, info: MagnetInfo
    ) -> tuple[str, Optional[int], list[FileEntry]]:
        seq = None
        if info.is_owned:
            info_hash, seq = self._lookup(info.public_key)
        else:
            info_hash = info.info_hash
        return info_hash, seq, self._load_manifest(info_hash)

    async def resolve(self, identifier: str, destination: Path) -> TorrentHandle:
        try:
            info = magnet.decode(identifier)
        except MalformedIdentifierError as exc:
            raise EngineFailureError(f"Cannot resolve {identifier!r}") from exc

        destination = Path(destination)
        info_hash, seq, files = await asyncio.to_thread(self._resolve, info)
        handle = TorrentHandle(
            magnet.encode(MagnetInfo(info_hash=info_hash)),
            info_hash,
            files,
            path=destination,
            public_key=info.public_key,
        )
        handle.sequence = seq

        await asyncio.to_thread(destination.mkdir, parents=True, exist_ok=True)
        total = handle.length or 1
        received = 0
        for entry in files:
            try:
                copied = await asyncio.to_thread(self._fetch_file, entry, destination)
            except OSError as exc:
                raise EngineFailureError(f"Fetching {entry.path} failed: {exc}") from exc
            received += entry.length
            handle.progress = min(received / total, 1.0)
            if copied:
                handle.emit(EVENT_DOWNLOAD, path=entry.path, length=entry.length)

        logger.info("Resolved %s into %s (%d files)", info_hash, destination, len(files))
        handle.emit(EVENT_DONE, info_hash=info_hash)
        return handle
