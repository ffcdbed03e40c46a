"""
Error taxonomy for bt-mut.

Every failure is raised to the immediate caller. Nothing here is
retried internally, and no failure leaves a half-written pointer.
"""

from __future__ import annotations

from typing import Optional


class BtMutError(Exception):
    """Base class for all bt-mut errors."""


class NotInitializedError(BtMutError):
    """Raised when a directory has no pointer and no magnet was given."""


class NotFoundError(BtMutError):
    """Raised when an expected secret key or pointer file is missing."""


class KeyNotFoundError(NotFoundError):
    """Raised when no secret key is stored for a public key."""


class PointerNotFoundError(NotFoundError):
    """Raised when a directory has no `.bt` pointer file."""


class MalformedIdentifierError(BtMutError, ValueError):
    """Raised when a string is not a valid magnet identifier."""


class PointerCorruptedError(MalformedIdentifierError):
    """Raised when a `.bt` pointer exists but cannot be decoded."""


class InvalidArgumentsError(BtMutError, ValueError):
    """Raised on inconsistent keypair options."""


class ImmutablePublicationError(BtMutError):
    """Raised when pushing to a pointer without an owner extension."""


class SequenceConflictError(BtMutError):
    """Raised when the sequence guard rejects a publication.

    Another writer published a newer version of the same key.
    """

    def __init__(self, public_key_hex: str, sequence: int, latest: Optional[int]):
        self.public_key_hex = public_key_hex
        self.sequence = sequence
        self.latest = latest
        super().__init__(
            f"Sequence {sequence} for {public_key_hex[:16]}... is not newer "
            f"than the last observed sequence {latest}"
        )


class EngineFailureError(BtMutError):
    """Raised when the torrent engine fails (publish timeout, bad record)."""
