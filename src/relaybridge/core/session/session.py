"""
Session: one event log, zero or one live process, and a status state machine.

The session is the ProcessObserver of its supervisor.  Everything the process
says, and every status change derived from it, becomes an envelope in the
event log; the log is the only thing a reconnecting client needs.

Envelope order for one inbound protocol line: the derived ``status`` envelope
(if the status changed) comes first, then the ``message`` envelope.  Process
death produces ``exit`` (or ``error``) followed by ``status: dead``.
"""

from __future__ import annotations

import json
import time
from typing import Any

import structlog

from relaybridge.core.events.envelope import Envelope, EventKind
from relaybridge.core.events.log import EventLog, Subscriber
from relaybridge.core.session import protocol
from relaybridge.core.session.models import VALID_TRANSITIONS, SessionStatus, SessionSummary
from relaybridge.os.process.supervisor import ProcessSupervisor

logger = structlog.get_logger()


class Session:
    """A logical conversation bound to one durable id."""

    def __init__(
        self,
        session_id: str,
        working_directory: str,
        event_log: EventLog,
        *,
        created_at: float | None = None,
    ) -> None:
        self.id = session_id
        self.working_directory = working_directory
        self.created_at = created_at if created_at is not None else time.time()
        self.last_active_at = time.time()
        self.status = SessionStatus.STARTING
        self.cli_session_id: str | None = None
        self.total_cost_usd = 0.0
        self.pid: int | None = None
        self._log_events = event_log
        self._supervisor: ProcessSupervisor | None = None
        self._capture_upstream_id = False
        self._log = logger.bind(session_id=session_id)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def event_log(self) -> EventLog:
        return self._log_events

    @property
    def process(self) -> ProcessSupervisor | None:
        """The supervisor while the child process is alive, else None."""
        return self._supervisor

    @property
    def is_dead(self) -> bool:
        return self.status == SessionStatus.DEAD

    # ------------------------------------------------------------------
    # Attach
    # ------------------------------------------------------------------

    async def start(self, supervisor: ProcessSupervisor) -> bool:
        """
        Spawn *supervisor*'s process and attach it.

        Returns False if the process could not be started; the session is
        then already Dead with an ``error`` envelope recorded.
        """
        if self.is_dead:
            raise RuntimeError(f"Session {self.id} is dead; resume it instead")
        self._supervisor = supervisor
        self._capture_upstream_id = True
        if not await supervisor.spawn():
            self._supervisor = None
            return False
        # No await between spawn and Ready: reader tasks cannot run before this.
        self.pid = supervisor.pid
        self._transition(SessionStatus.READY)
        return True

    # ------------------------------------------------------------------
    # ProcessObserver
    # ------------------------------------------------------------------

    def on_process_message(self, message: dict[str, Any]) -> None:
        self.last_active_at = time.time()

        upstream_id = protocol.upstream_conversation_id(message)
        if upstream_id and self._capture_upstream_id:
            # First init per process; a resumed process reports a new id.
            self._capture_upstream_id = False
            self.cli_session_id = upstream_id
            self._log.info("upstream_conversation_id", cli_session_id=upstream_id)

        if not self.is_dead:
            new_status = protocol.status_for_message(message)
            if new_status is not None:
                self._transition(new_status)

        cost = protocol.reported_cost(message)
        if cost is not None:
            self.total_cost_usd = cost

        self._record(EventKind.MESSAGE, message)

    def on_process_stderr(self, text: str) -> None:
        self._log.debug("process_stderr", text=text)
        self._record(EventKind.MESSAGE, {"type": "stderr", "text": text})

    def on_process_exit(self, code: int | None, signal_name: str | None) -> None:
        self._record(EventKind.EXIT, {"code": code, "signal": signal_name})
        self._mark_dead()

    def on_process_error(self, message: str) -> None:
        self._log.error("session_process_error", error=message)
        self._record(EventKind.ERROR, {"message": message})
        self._mark_dead()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def send_input(self, text: str) -> bool:
        """Write one line to the process.  False if there is no live process."""
        if self.is_dead or self._supervisor is None:
            return False
        self.last_active_at = time.time()
        return self._supervisor.write(text)

    def send_control_message(self, message: dict[str, Any]) -> bool:
        """Serialise *message* as one JSON line and write it."""
        return self.send_input(json.dumps(message, ensure_ascii=False, separators=(",", ":")))

    def send_interrupt(self) -> bool:
        if self.is_dead or self._supervisor is None:
            return False
        return self._supervisor.interrupt()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def destroy(self) -> None:
        """
        Terminate the process (graceful, then forced) and release the log file.

        Idempotent: a dead session only has its file handle released again.
        """
        supervisor = self._supervisor
        if supervisor is not None and not self.is_dead:
            self._log.info("session_destroying", pid=self.pid)
            await supervisor.terminate()
        if not self.is_dead:
            # Never spawned, or the exit was not confirmed within the grace period.
            self._mark_dead()
        self._supervisor = None
        self._log_events.close()

    # ------------------------------------------------------------------
    # Event log delegation
    # ------------------------------------------------------------------

    def get_history(self, max_lines: int) -> list[Envelope]:
        return self._log_events.history(max_lines)

    def subscribe(self, callback: Subscriber, *, after: int | None = None) -> None:
        self._log_events.subscribe(callback, after=after)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._log_events.unsubscribe(callback)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            last_active_at=self.last_active_at,
            working_directory=self.working_directory,
            cli_session_id=self.cli_session_id,
            total_cost_usd=self.total_cost_usd,
            pid=self.pid,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.summary().to_dict(include_pid=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, new_status: SessionStatus) -> None:
        """Move to *new_status* and record it; same-state and illegal moves are ignored."""
        old = self.status
        if new_status == old:
            return
        if new_status not in VALID_TRANSITIONS[old]:
            self._log.debug(
                "session_transition_ignored", current=str(old), requested=str(new_status)
            )
            return
        self.status = new_status
        self._log.debug("session_status", old=str(old), new=str(new_status))
        self._record(EventKind.STATUS, {"status": str(new_status)})

    def _mark_dead(self) -> None:
        self._transition(SessionStatus.DEAD)
        self._supervisor = None
        self.pid = None
        self._log_events.close()

    def _record(self, kind: EventKind, payload: Any) -> Envelope:
        return self._log_events.append(kind, payload)
