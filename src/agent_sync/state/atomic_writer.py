"""
Atomic file writes.

Every state file the engine rewrites (delta store, payload log, session
metadata) goes through this module so that a reader sees either the old
generation or the new one, never a truncated mix:

  1. serialize to a unique temp file in the target directory
  2. flush + fsync the temp file
  3. os.replace() it over the target (atomic on POSIX and Windows)
  4. fsync the directory so the rename itself is durable

On any failure the temp file is removed and the error is re-raised.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)


def _fsync_dir(directory: Path) -> None:
    # Directory fsync is not supported on Windows; best effort elsewhere.
    if os.name == "nt":
        return
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def write_text_atomic(path: Path | str, content: str) -> None:
    """Atomically replace `path` with `content`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            logger.debug(f"[atomic] Could not remove temp file {tmp_path}")
        raise

    _fsync_dir(path.parent)


def write_jsonl_atomic(path: Path | str, records: Iterable[Any]) -> int:
    """
    Atomically write records as JSON Lines.

    Returns:
        Number of records written
    """
    lines = [json.dumps(record, ensure_ascii=False) for record in records]
    content = "\n".join(lines) + "\n" if lines else ""
    write_text_atomic(path, content)
    logger.debug(f"[atomic] Wrote {len(lines)} records to {path}")
    return len(lines)


def write_json_atomic(path: Path | str, data: Any) -> None:
    """Atomically write a single JSON document (pretty-printed)."""
    write_text_atomic(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def append_jsonl(path: Path | str, record: Any) -> None:
    """
    Append one record to a JSON Lines file.

    The line is written with a single write() call and fsynced. A crash can
    at worst leave a torn last line, which the resilient reader skips.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False) + "\n"
    with open(path, "a", encoding="utf-8", newline="\n") as f:
        f.write(line)
        f.flush()
        os.fsync(f.fileno())
