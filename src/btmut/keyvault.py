"""
The Key Vault -- secret keys for the publications you own.

One file per key, named after the public key:

    <secret_storage>/<public_key_hex>.key    # raw secret bytes, mode 0600

The vault is only ever indexed by public key. Secret bytes are never
logged, and a key supplied for the current call (SyncOptions) wins
over whatever is on disk.
"""

from __future__ import annotations

import hmac
import logging
from pathlib import Path
from typing import Optional

from ._atomic import atomic_write_bytes
from .errors import InvalidArgumentsError, KeyNotFoundError
from .models import Keypair

logger = logging.getLogger("btmut.keyvault")

SECRET_FILE_EXTENSION = ".key"


class KeyVault:
    """File-backed secret key storage.

    Args:
        secret_storage: Directory holding the `.key` files. Created lazily
            on the first save.
    """

    def __init__(self, secret_storage: Path) -> None:
        self.secret_storage = Path(secret_storage).expanduser()

    def secret_location(self, public_key: bytes) -> Path:
        return self.secret_storage / (public_key.hex() + SECRET_FILE_EXTENSION)

    @staticmethod
    def _supplied_for(public_key: bytes, supplied: Optional[Keypair]) -> Optional[bytes]:
        if supplied is not None and supplied.public_key == public_key:
            return supplied.secret_key
        return None

    def has(self, public_key: bytes, supplied: Optional[Keypair] = None) -> bool:
        """Check whether a secret key is available for `public_key`.

        Args:
            public_key: Owner public key.
            supplied: Keypair passed in for the current call, if any.

        Returns:
            bool: True if supplied for this key or stored on disk.
        """
        if self._supplied_for(public_key, supplied) is not None:
            return True
        return self.secret_location(public_key).is_file()

    def save(self, public_key: bytes, secret_key: bytes, overwrite: bool = False) -> Path:
        """Store a secret key under its public key.

        Re-saving the identical secret is a no-op.

        Args:
            public_key: Owner public key (the index).
            secret_key: Secret key bytes.
            overwrite: Replace a different secret already stored for this key.

        Returns:
            Path: Location of the key file.

        Raises:
            InvalidArgumentsError: If a different secret is already stored
                and `overwrite` is False.
        """
        location = self.secret_location(public_key)
        if location.is_file():
            existing = location.read_bytes()
            if hmac.compare_digest(existing, secret_key):
                return location
            if not overwrite:
                raise InvalidArgumentsError(
                    f"A different secret key is already stored for {public_key.hex()}"
                )
            logger.warning("Replacing stored secret key for %s", public_key.hex())

        self.secret_storage.mkdir(parents=True, exist_ok=True)
        atomic_write_bytes(location, secret_key, mode=0o600)
        logger.info("Secret key saved for %s", public_key.hex())
        return location

    def load(self, public_key: bytes, supplied: Optional[Keypair] = None) -> bytes:
        """Fetch the secret key for `public_key`.

        Raises:
            KeyNotFoundError: If none is supplied or stored.
        """
        secret = self._supplied_for(public_key, supplied)
        if secret is not None:
            return secret
        try:
            return self.secret_location(public_key).read_bytes()
        except FileNotFoundError as exc:
            raise KeyNotFoundError(
                f"No secret key for {public_key.hex()} in {self.secret_storage}"
            ) from exc

    def discard(self, public_key: bytes) -> bool:
        """Remove the stored secret for `public_key`, if any.

        Returns:
            bool: True if a key file was removed.
        """
        location = self.secret_location(public_key)
        if not location.is_file():
            return False
        location.unlink(missing_ok=True)
        logger.info("Secret key discarded for %s", public_key.hex())
        return True

    def list_public_keys(self) -> list[str]:
        """Hex public keys of every stored secret, sorted."""
        if not self.secret_storage.is_dir():
            return []
        return sorted(
            p.name[: -len(SECRET_FILE_EXTENSION)]
            for p in self.secret_storage.glob("*" + SECRET_FILE_EXTENSION)
        )
