"""
Sequence Guard -- a mutable publication only ever moves forward.

For every owner key the guard remembers the highest sequence number it
has accepted. A publication is accepted only if its sequence is strictly
greater. Anything else is a replay or a concurrent writer
that got there first.

Records live in `<state_dir>/sequences.json`:

    {"<public_key_hex>": 7, ...}

The file is re-read before every accept so independent processes
sharing a state directory see each other's progress.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Optional

from ._atomic import atomic_write_bytes

logger = logging.getLogger("btmut.sequence")

SEQUENCE_FILE = "sequences.json"


class SequenceGuard:
    """Monotonic sequence records per public key.

    Args:
        state_dir: Directory for `sequences.json`. None keeps records in
            memory only.
    """

    def __init__(self, state_dir: Optional[Path] = None) -> None:
        self._path = Path(state_dir) / SEQUENCE_FILE if state_dir else None
        self._records: dict[str, int] = {}
        self._lock = threading.Lock()
        self._refresh()

    def _refresh(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to load sequence records: %s", exc)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed sequence records in %s", self._path)
            return
        for key, seq in data.items():
            if isinstance(seq, int) and seq > self._records.get(key, -1):
                self._records[key] = seq

    def _persist(self, records: dict[str, int]) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_bytes(
            self._path,
            json.dumps(records, indent=2, sort_keys=True).encode("utf-8"),
        )

    def latest(self, public_key: bytes) -> Optional[int]:
        """Highest accepted sequence for the key, or None."""
        with self._lock:
            self._refresh()
            return self._records.get(public_key.hex())

    def next_sequence(self, public_key: bytes) -> int:
        """The smallest sequence the guard would accept next."""
        last = self.latest(public_key)
        return 0 if last is None else last + 1

    def admits(self, public_key: bytes, sequence: int) -> bool:
        """Would `accept` succeed? Never records anything."""
        with self._lock:
            self._refresh()
            return self._admits(public_key.hex(), sequence)

    def _admits(self, key: str, sequence: int) -> bool:
        if sequence < 0:
            return False
        last = self._records.get(key)
        return last is None or sequence > last

    def accept(self, public_key: bytes, sequence: int) -> bool:
        """Record `sequence` if it is newer than anything seen for the key.

        Args:
            public_key: Owner public key.
            sequence: Proposed (or engine-assigned) sequence number.

        Returns:
            bool: True if recorded, False if stale (state unchanged).
        """
        key = public_key.hex()
        with self._lock:
            self._refresh()
            if not self._admits(key, sequence):
                logger.warning(
                    "Rejected sequence %d for %s (latest %s)",
                    sequence, key, self._records.get(key),
                )
                return False
            records = {**self._records, key: sequence}
            self._persist(records)
            self._records = records
        logger.debug("Accepted sequence %d for %s", sequence, key)
        return True
