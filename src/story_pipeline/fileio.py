"""Atomic file writes.

Every durable file the pipeline owns (checkpoints, escalations, the status
ledger) goes through atomic_write_text: content lands in a sibling temp file,
is flushed to disk, then swapped in with a single os.replace. A crash at any
point leaves either the old file or the new one, never a mix.
"""

import os
import tempfile
from contextlib import suppress
from pathlib import Path


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text to disk atomically.

    Raises:
        OSError: the write or rename failed; the previous file is untouched
            and the temp file has been removed
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def temp_files_for(path: Path) -> list[Path]:
    """Leftover temp files for a target, e.g. after a crash mid-write."""
    path = Path(path)
    if not path.parent.exists():
        return []
    return sorted(path.parent.glob(f"{path.name}.*.tmp"))
