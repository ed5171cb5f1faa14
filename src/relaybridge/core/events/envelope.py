"""
Envelope: one ordered, timestamped, tagged record in a session's event log.

Record form (one JSON object per line in the durable log, and the payload of
every SSE frame)::

    {"id": 7, "event": "message", "data": {...}, "timestamp": 1760000000.25}

The durable log's first line is a metadata record with the reserved kind
``meta`` and id 0; it is never an Envelope and readers skip it.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

META_EVENT = "meta"


class EventKind(StrEnum):
    MESSAGE = "message"  # one protocol line from the process (or raw/stderr text)
    STATUS = "status"  # derived session status change
    EXIT = "exit"  # process exited
    ERROR = "error"  # process could not be spawned / failed


@dataclass(frozen=True)
class Envelope:
    sequence: int
    kind: EventKind
    payload: Any
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.sequence,
            "event": str(self.kind),
            "data": self.payload,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Envelope:
        """Build an Envelope from its record form; raise ValueError if it is not one."""
        try:
            sequence = raw["id"]
            kind = EventKind(raw["event"])
            timestamp = float(raw.get("timestamp", 0.0))
        except (KeyError, TypeError) as exc:
            raise ValueError(f"not an envelope record: {exc}") from exc
        if not isinstance(sequence, int) or isinstance(sequence, bool) or sequence < 1:
            raise ValueError(f"invalid envelope id: {sequence!r}")
        return cls(sequence=sequence, kind=kind, payload=raw.get("data"), timestamp=timestamp)


def iter_records(path: Path) -> Iterator[dict[str, Any]]:
    """
    Yield every JSON object line of a durable log file, oldest first.

    Blank, truncated, and otherwise malformed lines are skipped one at a time,
    so damage at the tail never hides earlier records.
    """
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("log_line_malformed", path=str(path), line=lineno)
                continue
            if isinstance(obj, dict):
                yield obj


def iter_envelopes(path: Path) -> Iterator[Envelope]:
    """Yield the Envelopes of a durable log file, skipping the metadata line."""
    for record in iter_records(path):
        if record.get("event") == META_EVENT:
            continue
        try:
            yield Envelope.from_dict(record)
        except ValueError:
            logger.debug("log_record_skipped", path=str(path), record_id=record.get("id"))
