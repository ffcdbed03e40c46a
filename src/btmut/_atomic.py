"""Write-then-rename helper shared by the pointer, vault, and guard."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


def atomic_write_bytes(target: Path, data: bytes, mode: Optional[int] = None) -> Path:
    """Write `data` to `target` so readers see the old file or the new one.

    The temp file lives beside the target so the final rename stays on
    one filesystem.

    Args:
        target: Destination path.
        data: Full file contents.
        mode: Optional permission bits applied before the rename.

    Returns:
        Path: The target path.
    """
    tmp = target.parent / f".{target.name}.{os.getpid()}.tmp"
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        tmp.replace(target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    return target
