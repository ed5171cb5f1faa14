"""
Event log: ordered, bounded-memory, replayable record of one session.

Every envelope gets the next sequence number (1, 2, 3, ... with no gaps),
is kept in an in-memory buffer bounded at ``capacity``, is written to the
durable log file (if one is configured), and is then handed to every live
subscriber in registration order.

The buffer and the file are independent: the buffer bounds memory and only
limits replay depth; the file is complete and a resumed session is rebuilt
from it.  When the buffer is full, ``evict_oldest`` drops its oldest entry
and ``reject`` stops buffering new ones.  Either way every envelope is still
numbered, persisted and delivered.

Subscribers:
  - The subscriber set is copy-on-write; delivery iterates a snapshot, so a
    callback that (un)subscribes itself or another listener mid-delivery can
    neither skip nor double-invoke anyone.
  - A callback registered during delivery only sees later envelopes.
  - A raising callback is logged and skipped; the log and the other
    subscribers are unaffected.
  - Delivery is synchronous.  Callbacks must not block; a slow consumer
    queues the envelope and does its work elsewhere.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path
from typing import IO, Any

import structlog

from relaybridge.core.events.envelope import Envelope, EventKind, iter_envelopes

logger = structlog.get_logger()

Subscriber = Callable[[Envelope], None]


class EvictionPolicy(StrEnum):
    """What an event log does with its in-memory buffer once it is at capacity.

    ``evict_oldest`` keeps the newest envelopes for replay; ``reject`` keeps the
    oldest and refuses to buffer more.  Neither affects the file or delivery.
    """

    EVICT_OLDEST = "evict_oldest"
    REJECT = "reject"


class EventLog:
    """Append-only envelope sequence with bounded replay and live fan-out."""

    def __init__(
        self,
        capacity: int,
        path: Path | None = None,
        *,
        eviction: EvictionPolicy = EvictionPolicy.EVICT_OLDEST,
        session_id: str = "",
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._path = path
        self._eviction = EvictionPolicy(eviction)
        self._log = logger.bind(session_id=session_id) if session_id else logger
        self._buffer: deque[Envelope] = deque()
        self._sequence = 0
        self._subscribers: tuple[Subscriber, ...] = ()
        self._fh: IO[str] | None = None
        self._closed = False
        self._buffer_full_logged = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def last_sequence(self) -> int:
        """Highest sequence number assigned so far (0 if none)."""
        return self._sequence

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __len__(self) -> int:
        return len(self._buffer)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(self, kind: EventKind | str, payload: Any) -> Envelope:
        """
        Record one envelope and fan it out.

        Raises ValueError (before assigning a sequence number) for an unknown
        *kind*.  A full buffer never refuses an append.
        """
        kind = EventKind(kind)
        self._sequence += 1
        envelope = Envelope(
            sequence=self._sequence,
            kind=kind,
            payload=payload,
            timestamp=time.time(),
        )

        self._buffer_envelope(envelope)
        self._persist(envelope)

        for callback in self._subscribers:
            self._deliver(callback, envelope)

        return envelope

    def _buffer_envelope(self, envelope: Envelope) -> None:
        if len(self._buffer) < self._capacity:
            self._buffer.append(envelope)
        elif self._eviction is EvictionPolicy.EVICT_OLDEST:
            self._buffer.popleft()
            self._buffer.append(envelope)
        elif not self._buffer_full_logged:
            self._buffer_full_logged = True
            self._log.warning(
                "event_log_buffer_full",
                capacity=self._capacity,
                first_unbuffered=envelope.sequence,
            )

    def _deliver(self, callback: Subscriber, envelope: Envelope) -> None:
        try:
            callback(envelope)
        except Exception:  # noqa: BLE001
            self._log.exception("event_subscriber_error", sequence=envelope.sequence)

    def _persist(self, envelope: Envelope) -> None:
        if self._path is None or self._closed:
            return
        try:
            if self._fh is None:
                self._fh = self._path.open("a", encoding="utf-8")
            self._fh.write(envelope.to_json() + "\n")
            self._fh.flush()
        except OSError as exc:
            self._log.warning(
                "event_log_write_failed",
                path=str(self._path),
                sequence=envelope.sequence,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def history(self, max_lines: int) -> list[Envelope]:
        """Return up to *max_lines* most recent buffered envelopes, oldest first."""
        if max_lines <= 0:
            return []
        if max_lines >= len(self._buffer):
            return list(self._buffer)
        return list(self._buffer)[-max_lines:]

    def since(self, sequence: int) -> list[Envelope]:
        """Return every buffered envelope with a sequence number greater than *sequence*."""
        return [e for e in self._buffer if e.sequence > sequence]

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber, *, after: int | None = None) -> None:
        """
        Register *callback* for every envelope appended from now on.

        With *after*, buffered envelopes newer than that sequence number are
        first delivered to *callback* synchronously.  Catch-up and
        registration happen without yielding, so a reconnecting client sees
        every envelope after *after* exactly once (as far back as the buffer
        reaches).
        """
        if after is not None:
            for envelope in self.since(after):
                self._deliver(callback, envelope)
        if callback not in self._subscribers:
            self._subscribers = (*self._subscribers, callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = tuple(cb for cb in self._subscribers if cb != callback)

    # ------------------------------------------------------------------
    # Resumption
    # ------------------------------------------------------------------

    def load_from_file(self, path: Path) -> int:
        """
        Rehydrate the buffer from a durable log file.

        Envelopes are accepted in file order as long as their sequence numbers
        keep increasing; malformed lines and out-of-order records are skipped.
        The buffer fills under the eviction policy as it would for live
        appends, and the sequence counter continues from the highest number
        seen.

        Returns the number of envelopes accepted.  A missing or unreadable
        file is logged and loads nothing.
        """
        accepted = 0
        try:
            for envelope in iter_envelopes(path):
                if envelope.sequence <= self._sequence:
                    continue
                self._buffer_envelope(envelope)
                self._sequence = envelope.sequence
                accepted += 1
        except OSError as exc:
            self._log.warning("event_log_load_failed", path=str(path), error=str(exc))
            return accepted

        self._log.info(
            "event_log_loaded",
            path=str(path),
            envelopes=accepted,
            buffered=len(self._buffer),
            last_sequence=self._sequence,
        )
        return accepted

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release the durable file handle.  Later appends stay in memory only."""
        self._closed = True
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError as exc:
                self._log.warning("event_log_close_failed", error=str(exc))
            self._fh = None
