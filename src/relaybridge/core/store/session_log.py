"""
Durable session log files: one JSONL file per session id.

Layout (under the configured sessions directory)::

    <session_id>.jsonl
      line 1   {"id": 0, "event": "meta", "data": {...}, "timestamp": ...}
      line 2+  envelope records, append-only
    server.pid
      PID of the server that owns (writes to) the directory, if any

The store only creates, inspects, and deletes files; appends are done by the
session's EventLog.  ``inspect()`` reconstructs what a listing or a resume
needs from a file without replaying it into memory.
"""

from __future__ import annotations

import json
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from relaybridge.core.constants import SERVER_PID_FILENAME, SESSION_LOG_SUFFIX
from relaybridge.core.events.envelope import META_EVENT, EventKind, iter_records
from relaybridge.core.exceptions import SessionNotFoundError, SessionsDirectoryInUseError
from relaybridge.core.session import protocol

logger = structlog.get_logger()

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


@dataclass
class SessionMeta:
    """Contents of the metadata line written when a session is created."""

    working_directory: str
    model: str = ""
    resume_conversation_id: str = ""

    def to_record(self, timestamp: float | None = None) -> dict[str, Any]:
        return {
            "id": 0,
            "event": META_EVENT,
            "data": {
                "working_directory": self.working_directory,
                "model": self.model or None,
                "resume_conversation_id": self.resume_conversation_id or None,
            },
            "timestamp": timestamp if timestamp is not None else time.time(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> SessionMeta:
        data = record.get("data")
        if not isinstance(data, dict):
            data = {}
        return cls(
            working_directory=str(data.get("working_directory") or ""),
            model=str(data.get("model") or ""),
            resume_conversation_id=str(data.get("resume_conversation_id") or ""),
        )


@dataclass
class DurableSessionRecord:
    """What a session log file says about a session that may no longer be live."""

    session_id: str
    meta: SessionMeta | None
    cli_session_id: str | None
    created_at: float
    last_active_at: float
    total_cost_usd: float
    last_sequence: int
    last_status: str | None = None


class SessionLogStore:
    """Filesystem-backed registry of durable session logs."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, session_id: str) -> Path:
        """Return the log path for *session_id*; ids that are not a plain file stem are unknown."""
        if not _SAFE_ID.match(session_id):
            raise SessionNotFoundError(f"Invalid session id: {session_id!r}")
        return self._dir / f"{session_id}{SESSION_LOG_SUFFIX}"

    def exists(self, session_id: str) -> bool:
        try:
            return self.path_for(session_id).is_file()
        except SessionNotFoundError:
            return False

    def create(self, session_id: str, meta: SessionMeta) -> Path:
        """Create (or truncate) the log file and write its metadata line."""
        path = self.path_for(session_id)
        try:
            self._dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as fh:
                fh.write(json.dumps(meta.to_record(), separators=(",", ":")) + "\n")
        except OSError as exc:
            logger.warning("session_log_create_failed", session_id=session_id, error=str(exc))
        return path

    def delete(self, session_id: str) -> bool:
        """Remove the log file.  Returns False if there was nothing to remove."""
        path = self.path_for(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("session_log_delete_failed", session_id=session_id, error=str(exc))
            return False
        logger.info("session_log_deleted", session_id=session_id)
        return True

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @property
    def pid_file(self) -> Path:
        return self._dir / SERVER_PID_FILENAME

    def owner_pid(self) -> int | None:
        """PID of the live process that owns the directory; a stale PID file counts as none."""
        try:
            pid = int(self.pid_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None
        return pid if _pid_alive(pid) else None

    def claim(self) -> None:
        """
        Record this process as the directory's owner.

        Raises SessionsDirectoryInUseError if another live process already
        owns it.  A stale PID file is replaced.
        """
        owner = self.owner_pid()
        if owner is not None and owner != os.getpid():
            raise SessionsDirectoryInUseError(
                f"Sessions directory {self._dir} is in use by another server (PID {owner})"
            )
        self._dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.pid_file.write_text(f"{os.getpid()}\n")
        logger.debug("sessions_dir_claimed", directory=str(self._dir), pid=os.getpid())

    def release(self) -> None:
        """Remove the PID file if this process is the recorded owner."""
        if self.owner_pid() == os.getpid():
            self.pid_file.unlink(missing_ok=True)

    def session_ids(self) -> list[str]:
        """Ids of every log file in the directory, sorted."""
        if not self._dir.is_dir():
            return []
        return sorted(
            p.name[: -len(SESSION_LOG_SUFFIX)]
            for p in self._dir.iterdir()
            if p.is_file() and p.name.endswith(SESSION_LOG_SUFFIX) and _SAFE_ID.match(p.stem)
        )

    def inspect(self, session_id: str) -> DurableSessionRecord | None:
        """
        Summarise a log file without loading it into an EventLog.

        The upstream conversation id is the one from the *last* init message,
        since every resume of the same session starts with a fresh init.
        Returns None if the file does not exist or cannot be read.
        """
        path = self.path_for(session_id)
        if not path.is_file():
            return None

        meta: SessionMeta | None = None
        cli_session_id: str | None = None
        created_at: float | None = None
        last_active_at = 0.0
        total_cost = 0.0
        last_sequence = 0
        last_status: str | None = None

        try:
            for record in iter_records(path):
                timestamp = record.get("timestamp")
                ts = float(timestamp) if isinstance(timestamp, int | float) else None
                if record.get("event") == META_EVENT:
                    if meta is None:
                        meta = SessionMeta.from_record(record)
                    if ts is not None and created_at is None:
                        created_at = ts
                    continue

                if ts is not None:
                    if created_at is None:
                        created_at = ts
                    last_active_at = ts
                seq = record.get("id")
                if isinstance(seq, int) and not isinstance(seq, bool) and seq > last_sequence:
                    last_sequence = seq

                data = record.get("data")
                if not isinstance(data, dict):
                    continue
                if record.get("event") == EventKind.STATUS:
                    if isinstance(data.get("status"), str):
                        last_status = data["status"]
                    continue
                if record.get("event") != EventKind.MESSAGE:
                    continue
                if upstream := protocol.upstream_conversation_id(data):
                    cli_session_id = upstream
                cost = protocol.reported_cost(data)
                if cost is not None:
                    total_cost = cost
        except OSError as exc:
            logger.warning("session_log_inspect_failed", session_id=session_id, error=str(exc))
            return None

        if created_at is None:
            created_at = path.stat().st_mtime
        return DurableSessionRecord(
            session_id=session_id,
            meta=meta,
            cli_session_id=cli_session_id,
            created_at=created_at,
            last_active_at=last_active_at or created_at,
            total_cost_usd=total_cost,
            last_sequence=last_sequence,
            last_status=last_status,
        )
