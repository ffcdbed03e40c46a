"""
Audit trail -- what was published, pulled, or refused, and when.

JSONL, one object per line, append-only. Entries name public keys and
info-hashes, never secret material.
"""

from __future__ import annotations

import json
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


def audit_event(
    state_dir: Path,
    event_type: str,
    detail: str,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        state_dir: Directory holding `audit.log`.
        event_type: CREATE, PUSH, PULL or CONFLICT.
        detail: Human-readable event description.
        metadata: Optional structured data such as the directory or info-hash.

    Returns:
        AuditEntry: The entry that was written.
    """
    state_dir.mkdir(parents=True, exist_ok=True)
    entry = AuditEntry(event_type=event_type, detail=detail, metadata=metadata)

    with (state_dir / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")

    return entry


def read_audit_log(state_dir: Path, limit: int = 0) -> list[AuditEntry]:
    """Read the audit log back, oldest first.

    Args:
        state_dir: Directory holding `audit.log`.
        limit: Keep only the newest `limit` entries (0 = all).

    Returns:
        list[AuditEntry]: Parsed entries. Unparseable lines are skipped.
    """
    audit_log = state_dir / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError):
            continue

    if limit > 0:
        entries = entries[-limit:]
    return entries
