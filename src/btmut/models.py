"""
Data models -- keypairs, magnet links, options, and sync phases.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidArgumentsError


class SyncPhase(str, Enum):
    """Where a directory stands in the sync state machine."""

    UNINITIALIZED = "uninitialized"
    CREATING = "creating"
    OWNED_READY = "owned_ready"
    TRACKING_IMMUTABLE = "tracking_immutable"
    TRACKING_MUTABLE = "tracking_mutable"
    ERROR = "error"


class Keypair(BaseModel):
    """Ed25519 signing keypair backing an owned publication."""

    model_config = ConfigDict(frozen=True)

    public_key: bytes
    secret_key: bytes = Field(repr=False)

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()


class MagnetInfo(BaseModel):
    """Decoded magnet identifier.

    `info_hash` is the fixed snapshot, `public_key` marks the link as a
    pointer to a mutable publication. `extra` keeps every other query
    parameter (dn, tr, ...) verbatim and in order. `verbatim` holds the
    identifier as written when it differs from the canonical encoding
    (parameter order, hex case), so it can be reproduced exactly.
    """

    model_config = ConfigDict(frozen=True)

    info_hash: Optional[str] = None
    public_key: Optional[bytes] = None
    extra: tuple[tuple[str, str], ...] = ()
    verbatim: Optional[str] = None

    @property
    def is_owned(self) -> bool:
        return bool(self.public_key)


class PublishResult(BaseModel):
    """What the engine reports back after publishing a mutable record."""

    identifier: str
    sequence: int


class FileEntry(BaseModel):
    """One file of a snapshot, relative to the snapshot root."""

    path: str
    length: int
    sha1: str


class TorrentEvent(BaseModel):
    """An engine event (`wire`, `download`, `done`) forwarded as-is."""

    kind: str
    detail: dict[str, Any] = Field(default_factory=dict)


class SyncOptions(BaseModel):
    """Per-call options for push and sync.

    Rules:
        - `public_key` and `secret_key` are used verbatim and must be
          given together or not at all.
        - `seed` deterministically derives a keypair when no explicit
          pair is given. It is ignored when one is.
        - Keys may be passed as bytes or hex strings.
    """

    public_key: Optional[bytes] = None
    secret_key: Optional[bytes] = Field(default=None, repr=False)
    seed: Optional[bytes] = Field(default=None, repr=False)

    @field_validator("public_key", "secret_key", mode="before")
    @classmethod
    def _hex_to_bytes(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return bytes.fromhex(value)
            except ValueError as exc:
                raise ValueError("keys must be hex encoded") from exc
        return value

    @field_validator("seed", mode="before")
    @classmethod
    def _seed_to_bytes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    def keypair(self) -> Optional[Keypair]:
        """Return the explicitly supplied keypair, if any.

        Raises:
            InvalidArgumentsError: If only one half of the pair is set.
        """
        if self.public_key is None and self.secret_key is None:
            return None
        if self.public_key is None or self.secret_key is None:
            raise InvalidArgumentsError(
                "public_key and secret_key must be supplied together"
            )
        return Keypair(public_key=self.public_key, secret_key=self.secret_key)
