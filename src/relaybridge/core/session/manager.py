"""
Session manager.

The SessionManager is the registry, factory, and garbage collector for
sessions.  It is the only component that adds or removes registry entries,
and it reconciles live sessions with the durable logs on disk.

Invariants:
  - Session ids are ``sess_`` + 12 hex characters and are never reused.
  - At most ``max_sessions`` sessions are non-Dead at any time.
  - A Dead session stays in the registry (and on disk) until it is deleted
    explicitly; the staleness sweep kills processes but never forgets them.
  - A live registry entry always shadows the durable-only record of the same id.
  - Only the manager that claimed the sessions directory (see start()) may
    create, resume, or delete sessions while its server is running; any other
    manager over the same directory is read-only and reports last known
    statuses.
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path

import structlog

from relaybridge.core.config import RelayBridgeConfig
from relaybridge.core.events.envelope import Envelope, iter_envelopes
from relaybridge.core.events.log import EventLog
from relaybridge.core.exceptions import (
    SessionCapacityError,
    SessionNotFoundError,
    SessionsDirectoryInUseError,
)
from relaybridge.core.session import protocol
from relaybridge.core.session.models import (
    SessionOptions,
    SessionStatus,
    SessionSummary,
    new_session_id,
)
from relaybridge.core.session.session import Session
from relaybridge.core.store.session_log import SessionLogStore, SessionMeta
from relaybridge.os.process.supervisor import ProcessConfig, ProcessObserver, ProcessSupervisor

logger = structlog.get_logger()

ProcessFactory = Callable[[ProcessConfig, str, ProcessObserver], ProcessSupervisor]


class SessionManager:
    """
    Live session registry backed by a directory of durable logs.

    Single-threaded asyncio use only; every method must be called from the
    event loop thread.
    """

    def __init__(
        self,
        config: RelayBridgeConfig,
        store: SessionLogStore | None = None,
        *,
        process_factory: ProcessFactory = ProcessSupervisor,
    ) -> None:
        self._config = config
        self._store = store or SessionLogStore(config.sessions_dir)
        self._process_factory = process_factory
        self._sessions: dict[str, Session] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._owner = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def store(self) -> SessionLogStore:
        return self._store

    @property
    def foreign_owner_pid(self) -> int | None:
        """PID of another running server that owns the sessions directory, if any."""
        if self._owner:
            return None
        return self._store.owner_pid()

    @property
    def active_count(self) -> int:
        """Number of registered sessions that are not Dead."""
        return sum(1 for s in self._sessions.values() if not s.is_dead)

    def get(self, session_id: str) -> Session:
        """Return the live registry entry; raise SessionNotFoundError if there is none."""
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"Session not found: {session_id!r}") from None

    def get_or_none(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def describe(self, session_id: str) -> SessionSummary:
        """Summary of a live session, or of a durable-only one (see list_sessions)."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session.summary()
        summary = self._durable_summary(session_id, self.foreign_owner_pid is not None)
        if summary is None:
            raise SessionNotFoundError(f"Session not found: {session_id!r}")
        return summary

    def list_sessions(self) -> list[SessionSummary]:
        """
        Live sessions plus durable-only logs, newest first.

        Durable-only sessions are reported Dead, unless another running server
        owns the directory: then they carry the last status their log recorded.
        """
        owned_elsewhere = self.foreign_owner_pid is not None
        summaries: dict[str, SessionSummary] = {
            sid: session.summary() for sid, session in self._sessions.items()
        }
        for sid in self._store.session_ids():
            if sid in summaries:
                continue
            if (summary := self._durable_summary(sid, owned_elsewhere)) is not None:
                summaries[sid] = summary
        return sorted(summaries.values(), key=lambda s: s.created_at, reverse=True)

    def _durable_summary(self, session_id: str, owned_elsewhere: bool) -> SessionSummary | None:
        record = self._store.inspect(session_id)
        if record is None:
            return None
        status = SessionStatus.DEAD
        if owned_elsewhere and record.last_status in {str(s) for s in SessionStatus}:
            status = SessionStatus(record.last_status)
        return SessionSummary(
            id=session_id,
            status=status,
            created_at=record.created_at,
            last_active_at=record.last_active_at,
            working_directory=record.meta.working_directory if record.meta else "",
            cli_session_id=record.cli_session_id,
            total_cost_usd=record.total_cost_usd,
        )

    def read_history(self, session_id: str, max_lines: int) -> list[Envelope]:
        """
        Return up to *max_lines* most recent envelopes of a session.

        Live sessions answer from their in-memory buffer; durable-only
        sessions from the tail of their log file.
        """
        session = self._sessions.get(session_id)
        if session is not None:
            return session.get_history(max_lines)
        if not self._store.exists(session_id):
            raise SessionNotFoundError(f"Session not found: {session_id!r}")
        if max_lines <= 0:
            return []
        return list(deque(iter_envelopes(self._store.path_for(session_id)), maxlen=max_lines))

    # ------------------------------------------------------------------
    # Create / resume
    # ------------------------------------------------------------------

    async def create_session(self, options: SessionOptions | None = None) -> Session:
        """
        Create a session, spawn its process, and send the initialize request.

        A process that fails to start does not raise: the returned session is
        already Dead and its log holds the error.
        """
        options = options or SessionOptions()
        self._check_writable()
        self._check_capacity()

        session_id = new_session_id()
        while session_id in self._sessions or self._store.exists(session_id):
            session_id = new_session_id()

        working_directory = options.working_directory or os.getcwd()
        path = self._store.create(
            session_id,
            SessionMeta(
                working_directory=working_directory,
                model=options.model,
                resume_conversation_id=options.resume_conversation_id,
            ),
        )
        session = Session(session_id, working_directory, self._new_event_log(session_id, path))
        self._sessions[session_id] = session
        logger.info(
            "session_created",
            session_id=session_id,
            cwd=working_directory,
            model=options.model or None,
        )

        await self._attach(session, options)
        return session

    async def resume_session(
        self, session_id: str, options: SessionOptions | None = None
    ) -> Session:
        """
        Bring a session back to life from its durable log.

        A live, non-Dead session is returned unchanged.  Otherwise the log must
        exist and must hold an upstream conversation id; the whole log is
        replayed into a fresh event log and a new process is spawned with
        ``--resume``.  The public session id does not change.
        """
        existing = self._sessions.get(session_id)
        if existing is not None and not existing.is_dead:
            return existing
        self._check_writable()

        record = self._store.inspect(session_id)
        if record is None:
            raise SessionNotFoundError(f"Session not found: {session_id!r}")
        if not record.cli_session_id:
            raise SessionNotFoundError(
                f"Session {session_id!r} has no upstream conversation id to resume"
            )
        self._check_capacity()

        options = options or SessionOptions()
        meta = record.meta or SessionMeta(working_directory="")
        working_directory = meta.working_directory or options.working_directory or os.getcwd()
        options = dataclasses.replace(
            options,
            working_directory=working_directory,
            model=options.model or meta.model,
        )

        path = self._store.path_for(session_id)
        event_log = self._new_event_log(session_id, path)
        event_log.load_from_file(path)

        session = Session(session_id, working_directory, event_log, created_at=record.created_at)
        session.cli_session_id = record.cli_session_id
        session.total_cost_usd = record.total_cost_usd
        self._sessions[session_id] = session
        logger.info(
            "session_resuming",
            session_id=session_id,
            cli_session_id=record.cli_session_id,
            replayed=event_log.last_sequence,
        )

        await self._attach(session, options, resume_conversation_id=record.cli_session_id)
        return session

    async def _attach(
        self,
        session: Session,
        options: SessionOptions,
        resume_conversation_id: str | None = None,
    ) -> None:
        command = [
            *self._config.cli.command,
            *protocol.build_cli_args(options, resume_conversation_id),
        ]
        supervisor = self._process_factory(
            ProcessConfig(
                command=command,
                cwd=session.working_directory,
                grace_period_s=self._config.sessions.grace_period_seconds,
            ),
            session.id,
            session,
        )
        if await session.start(supervisor):
            session.send_control_message(protocol.initialize_request())

    def _new_event_log(self, session_id: str, path: Path) -> EventLog:
        return EventLog(
            self._config.sessions.buffer_size,
            path,
            eviction=self._config.sessions.eviction,
            session_id=session_id,
        )

    def _check_writable(self) -> None:
        if (pid := self.foreign_owner_pid) is not None:
            raise SessionsDirectoryInUseError(
                f"Sessions directory {self._store.directory} is owned by a running server "
                f"(PID {pid})"
            )

    def _check_capacity(self) -> None:
        limit = self._config.sessions.max_sessions
        if self.active_count >= limit:
            raise SessionCapacityError(f"Maximum number of active sessions reached ({limit})")

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    async def destroy_session(self, session_id: str) -> None:
        """
        Delete a session permanently: stop it if live, then remove its log.

        Raises SessionNotFoundError when there is neither a live entry nor a
        log file for *session_id*, and SessionsDirectoryInUseError when the log
        belongs to another running server.
        """
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.destroy()
            self._store.delete(session_id)
            logger.info("session_destroyed", session_id=session_id)
            return
        self._check_writable()
        if self._store.delete(session_id):
            logger.info("session_destroyed", session_id=session_id, live=False)
            return
        raise SessionNotFoundError(f"Session not found: {session_id!r}")

    async def destroy_all(self) -> None:
        """Best-effort teardown of every live session (shutdown path)."""
        sessions = [s for s in self._sessions.values() if not s.is_dead]
        if not sessions:
            return
        logger.info("sessions_destroying_all", count=len(sessions))
        results = await asyncio.gather(*(s.destroy() for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("session_destroy_failed", session_id=session.id, error=str(result))

    # ------------------------------------------------------------------
    # Staleness sweep
    # ------------------------------------------------------------------

    async def sweep_stale(self, now: float | None = None) -> list[str]:
        """
        Kill the process of every non-Dead session idle for longer than the timeout.

        Swept sessions stay registered and keep their log, so they can be
        resumed.  Returns the ids that were swept.
        """
        timeout = self._config.sessions.timeout_seconds
        if timeout <= 0:
            return []
        now = time.time() if now is None else now
        stale = [
            s for s in self._sessions.values() if not s.is_dead and now - s.last_active_at > timeout
        ]
        if not stale:
            return []

        for session in stale:
            logger.info(
                "session_stale",
                session_id=session.id,
                idle_s=round(now - session.last_active_at, 1),
            )
        results = await asyncio.gather(*(s.destroy() for s in stale), return_exceptions=True)
        for session, result in zip(stale, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("session_sweep_failed", session_id=session.id, error=str(result))
        return [s.id for s in stale]

    async def _sweep_loop(self) -> None:
        interval = self._config.sessions.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_stale()
            except Exception:  # noqa: BLE001
                logger.exception("session_sweep_error")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Claim the sessions directory and start the background staleness sweep.

        Raises SessionsDirectoryInUseError if another running server owns the
        directory.  The sweep is not started when the timeout is 0.
        """
        if not self._owner:
            self._store.claim()
            self._owner = True
        if self._sweep_task is not None or self._config.sessions.timeout_seconds <= 0:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="session_sweeper")
        logger.debug(
            "session_sweeper_started",
            interval_s=self._config.sessions.sweep_interval_seconds,
            timeout_s=self._config.sessions.timeout_seconds,
        )

    async def shutdown(self) -> None:
        """Stop the sweep, tear down every live session, and release the directory."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        await self.destroy_all()
        if self._owner:
            self._store.release()
            self._owner = False
