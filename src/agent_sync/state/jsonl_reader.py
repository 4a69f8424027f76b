"""
Resilient JSONL reader.

Agent transcripts and our own state files are "mostly" JSON Lines, but
upstream writers occasionally pretty-print a record, concatenate two
objects on one line, or write a whole JSON array on a single line.
This reader turns such a file into a lazy sequence of parsed values and
never lets one bad record abort the rest of the stream.

Per physical line:
  1. parse directly (arrays are flattened into their elements);
  2. a line starting with "[" is retried as an array prefix;
  3. a line containing "}{" is split into fragments, each parsed alone;
  4. otherwise the line is treated as the start of a multi-line record and
     following lines are accumulated (bounded) until the buffer parses.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)

# Upper bound on lines accumulated for one pretty-printed record.
MAX_MULTILINE_LINES = 1000

_CONCAT_BOUNDARY = re.compile(r"}\s*{")
_DECODER = json.JSONDecoder()


@dataclass
class JsonlStats:
    """Counters collected while streaming a file."""

    records: int = 0
    skipped: int = 0


def _preview(text: str, limit: int = 120) -> str:
    text = text.replace("\n", "\\n")
    return text if len(text) <= limit else text[:limit] + "..."


def _try_parse(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


def _expand(value: Any) -> Iterator[Any]:
    if isinstance(value, list):
        yield from value
    else:
        yield value


def _split_concatenated(line: str) -> list[str]:
    """Split `{...}{...}` into standalone objects, restoring the cut braces."""
    parts = _CONCAT_BOUNDARY.split(line)
    last = len(parts) - 1
    pieces = []
    for i, part in enumerate(parts):
        if i > 0:
            part = "{" + part
        if i < last:
            part = part + "}"
        pieces.append(part)
    return pieces


def _starts_new_record(raw: str) -> bool:
    """True for an unindented line that opens (or fully contains) a record."""
    if not raw or raw[0] in " \t":
        return False
    stripped = raw.strip()
    if stripped in ("{", "["):
        return True
    if stripped.startswith(("{", "[")):
        return _try_parse(stripped)[0]
    return False


def _skip(source: str, fragment: str, stats: JsonlStats, reason: str) -> None:
    stats.skipped += 1
    logger.warning(f"[jsonl] Skipped unparseable {reason} in {source}: {_preview(fragment)}")


def iter_jsonl_lines(
    lines: Iterable[str],
    *,
    source: str = "<stream>",
    stats: JsonlStats | None = None,
) -> Iterator[Any]:
    """
    Parse an iterable of text lines into JSON values.

    Args:
        lines: Physical lines (with or without trailing newlines)
        source: Name used in log messages
        stats: Optional counters updated while iterating

    Yields:
        Parsed JSON values, one per logical record
    """
    stats = stats if stats is not None else JsonlStats()
    it = iter(lines)
    carry: str | None = None

    while True:
        if carry is not None:
            raw, carry = carry, None
        else:
            raw = next(it, None)
            if raw is None:
                return

        line = raw.strip()
        if not line:
            continue

        ok, value = _try_parse(line)
        if ok:
            for item in _expand(value):
                stats.records += 1
                yield item
            continue

        if line.startswith("["):
            try:
                value, end = _DECODER.raw_decode(line)
            except ValueError:
                value, end = None, 0
            if isinstance(value, list):
                for item in value:
                    stats.records += 1
                    yield item
                rest = line[end:].strip()
                if rest:
                    _skip(source, rest, stats, "array tail")
                continue

        if _CONCAT_BOUNDARY.search(line):
            for piece in _split_concatenated(line):
                ok, value = _try_parse(piece)
                if ok:
                    stats.records += 1
                    yield value
                else:
                    _skip(source, piece, stats, "fragment")
            continue

        if not line.startswith(("{", "[")):
            _skip(source, line, stats, "line")
            continue

        # Pretty-printed record: keep appending lines until the buffer parses.
        buffer = [raw.rstrip("\r\n")]
        appended = 0
        done = False
        while appended < MAX_MULTILINE_LINES:
            nxt = next(it, None)
            if nxt is None:
                break
            if _starts_new_record(nxt):
                carry = nxt
                break
            appended += 1
            buffer.append(nxt.rstrip("\r\n"))
            ok, value = _try_parse("\n".join(buffer))
            if ok:
                for item in _expand(value):
                    stats.records += 1
                    yield item
                done = True
                break

        if not done:
            _skip(source, "\n".join(buffer), stats, "multi-line record")


def stream_jsonl(path: Path | str, stats: JsonlStats | None = None) -> Iterator[Any]:
    """
    Lazily yield records from a JSONL file.

    A missing file yields nothing. The returned generator can only be
    consumed once.
    """
    path = Path(path)
    if not path.exists():
        return
    with open(path, encoding="utf-8", errors="replace") as f:
        yield from iter_jsonl_lines(f, source=str(path), stats=stats)


def read_jsonl(path: Path | str, limit: int | None = None, stats: JsonlStats | None = None) -> list[Any]:
    """Read records from a JSONL file into a list, optionally stopping after `limit`."""
    results: list[Any] = []
    if limit is not None and limit <= 0:
        return results
    for record in stream_jsonl(path, stats=stats):
        results.append(record)
        if limit is not None and len(results) >= limit:
            break
    return results
