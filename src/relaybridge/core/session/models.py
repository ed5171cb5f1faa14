"""
Session domain models.

A Session binds one durable identifier to zero or one live CLI process.
Sessions are identified by ``sess_`` + 12 hex characters and own exactly one
event log; the process behind them may die and be replaced on resume.

Status state machine::

  STARTING → READY ⇄ BUSY ⇄ WAITING_FOR_INPUT
      any  → DEAD   (terminal)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from relaybridge.core.constants import SESSION_ID_PREFIX


class SessionStatus(StrEnum):
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    WAITING_FOR_INPUT = "waiting_for_input"  # permission request pending
    DEAD = "dead"


_LIVE = {SessionStatus.READY, SessionStatus.BUSY, SessionStatus.WAITING_FOR_INPUT}

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.STARTING: {SessionStatus.READY, SessionStatus.DEAD},
    SessionStatus.READY: (_LIVE - {SessionStatus.READY}) | {SessionStatus.DEAD},
    SessionStatus.BUSY: (_LIVE - {SessionStatus.BUSY}) | {SessionStatus.DEAD},
    SessionStatus.WAITING_FOR_INPUT: (_LIVE - {SessionStatus.WAITING_FOR_INPUT})
    | {SessionStatus.DEAD},
    # Terminal: no outgoing transitions
    SessionStatus.DEAD: set(),
}


def new_session_id() -> str:
    return SESSION_ID_PREFIX + uuid.uuid4().hex[:12]


@dataclass
class SessionOptions:
    """Caller-supplied options for creating or resuming a session."""

    working_directory: str = ""
    model: str = ""
    resume_conversation_id: str = ""
    permission_mode: str = ""
    system_prompt: str = ""
    dangerously_skip_permissions: bool = False
    additional_flags: list[str] = field(default_factory=list)


@dataclass
class SessionSummary:
    """List view of a session, live or recovered from its durable log."""

    id: str
    status: SessionStatus
    created_at: float
    last_active_at: float
    working_directory: str
    cli_session_id: str | None = None
    total_cost_usd: float = 0.0
    pid: int | None = None

    def to_dict(self, *, include_pid: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "status": str(self.status),
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "working_directory": self.working_directory,
            "cli_session_id": self.cli_session_id,
            "total_cost_usd": self.total_cost_usd,
        }
        if include_pid:
            data["pid"] = self.pid
        return data
