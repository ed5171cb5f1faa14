"""
Child process supervisor: one CLI process on three asyncio pipes.

  stdin   write(text) appends ``text + "\\n"``; never raises
  stdout  read line by line; each non-empty line is parsed as JSON and handed
          to the observer.  Lines that are not JSON objects are forwarded as
          ``{"type": "raw", "text": line}`` rather than dropped
  stderr  forwarded line by line as ``{"type": "stderr", "text": line}``

Lifecycle:
  spawn()      start the process; a start failure is reported through
               observer.on_process_error() and spawn() returns False
  interrupt()  SIGINT, fire and forget
  terminate()  SIGTERM, wait up to the grace period, then SIGKILL
  exit         observer.on_process_exit(code, signal) is called exactly once,
               after both output pipes have been drained

The exit latch (``_exited``) is the only completion signal: terminate() races
it against the grace timer, and whichever finishes first decides whether
SIGKILL is sent.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from relaybridge.core.constants import (
    MAX_LINE_BYTES,
    READER_DRAIN_SECONDS,
    TERMINATE_GRACE_SECONDS,
)

logger = structlog.get_logger()


class ProcessObserver(Protocol):
    """Owner-side callbacks.  All are invoked on the event loop thread."""

    def on_process_message(self, message: dict[str, Any]) -> None: ...

    def on_process_stderr(self, text: str) -> None: ...

    def on_process_exit(self, code: int | None, signal_name: str | None) -> None: ...

    def on_process_error(self, message: str) -> None: ...


@dataclass
class ProcessConfig:
    """Configuration for one supervised process."""

    command: list[str]  # full argv
    cwd: str = ""
    env: dict[str, str] = field(default_factory=dict)  # merged over os.environ
    grace_period_s: float = TERMINATE_GRACE_SECONDS
    max_line_bytes: int = MAX_LINE_BYTES


def parse_stdout_line(line: str) -> dict[str, Any]:
    """Parse one trimmed stdout line into an inbound message."""
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return {"type": "raw", "text": line}
    if not isinstance(parsed, dict):
        return {"type": "raw", "text": line}
    return parsed


async def read_bounded_line(stream: asyncio.StreamReader) -> bytes | None:
    """
    Read one line from *stream*, newline included.

    Returns b"" at end of stream.  A line longer than the reader's limit is
    skipped in full, up to and including its newline, and reported as None.
    """
    overlong = False
    while True:
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            line = exc.partial
        except asyncio.LimitOverrunError as exc:
            # The oversized prefix is still buffered; drop it and keep scanning.
            await stream.readexactly(exc.consumed)
            overlong = True
            continue
        return None if overlong else line


class ProcessSupervisor:
    """Owns a single child process for its whole lifetime."""

    def __init__(self, config: ProcessConfig, session_id: str, observer: ProcessObserver) -> None:
        self.config = config
        self.session_id = session_id
        self._observer = observer
        self._proc: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task[None]] = []
        self._exit_task: asyncio.Task[None] | None = None
        self._exited = asyncio.Event()
        self._dead = False
        self._log = logger.bind(session_id=session_id)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def is_alive(self) -> bool:
        return self._proc is not None and not self._dead

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn(self) -> bool:
        """Start the process with all three standard streams piped."""
        if self._proc is not None or self._dead:
            raise RuntimeError("ProcessSupervisor.spawn() may only be called once")

        env = {**os.environ, **self.config.env}
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.config.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.cwd or None,
                env=env,
                limit=self.config.max_line_bytes,
            )
        except (OSError, ValueError) as exc:
            self._dead = True
            self._exited.set()
            self._log.error("process_spawn_failed", command=self.config.command[0], error=str(exc))
            self._observer.on_process_error(f"Failed to start {self.config.command[0]}: {exc}")
            return False

        self._log.info("process_spawned", pid=self._proc.pid, cwd=self.config.cwd)
        self._readers = [
            asyncio.create_task(self._read_stdout(), name=f"stdout:{self.session_id}"),
            asyncio.create_task(self._read_stderr(), name=f"stderr:{self.session_id}"),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(), name=f"exit:{self.session_id}")
        return True

    async def terminate(self) -> None:
        """SIGTERM, wait up to the grace period, then SIGKILL.  Always returns."""
        if self._proc is None or self._exited.is_set():
            return

        self._send_signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self.config.grace_period_s)
            return
        except TimeoutError:
            self._log.warning("process_terminate_timeout", grace_s=self.config.grace_period_s)

        self._send_signal(signal.SIGKILL)
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self.config.grace_period_s)
        except TimeoutError:
            self._log.error("process_kill_unconfirmed", pid=self._proc.pid)

    async def wait_closed(self) -> None:
        """Wait until exit (or spawn failure) has been reported."""
        await self._exited.wait()

    def _send_signal(self, sig: signal.Signals) -> bool:
        if self._proc is None:
            return False
        try:
            self._proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, text: str) -> bool:
        """Append ``text + "\\n"`` to stdin.  False if the process is gone."""
        if not self.is_alive() or self._proc is None or self._proc.stdin is None:
            return False
        stdin = self._proc.stdin
        if stdin.is_closing():
            return False
        try:
            stdin.write((text + "\n").encode("utf-8"))
        except (OSError, RuntimeError) as exc:
            self._log.warning("process_stdin_write_failed", error=str(exc))
            return False
        return True

    def interrupt(self) -> bool:
        """Send SIGINT without waiting for any acknowledgement."""
        if not self.is_alive():
            return False
        return self._send_signal(signal.SIGINT)

    async def _read_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stream = self._proc.stdout
        while True:
            raw = await read_bounded_line(stream)
            if raw is None:
                self._log.warning("process_stdout_line_too_long", limit=self.config.max_line_bytes)
                self._observer.on_process_message(
                    {
                        "type": "raw",
                        "text": f"[output line exceeded {self.config.max_line_bytes} bytes]",
                    }
                )
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            self._observer.on_process_message(parse_stdout_line(line))

    async def _read_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        stream = self._proc.stderr
        while True:
            raw = await read_bounded_line(stream)
            if raw is None:
                self._log.warning("process_stderr_line_too_long", limit=self.config.max_line_bytes)
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not text.strip():
                continue
            self._observer.on_process_stderr(text)

    async def _watch_exit(self) -> None:
        assert self._proc is not None
        returncode = await self._proc.wait()

        # Let the readers drain what the process wrote before it exited; a
        # grandchild holding the pipes open must not delay exit forever.
        _done, pending = await asyncio.wait(self._readers, timeout=READER_DRAIN_SECONDS)
        for task in pending:
            task.cancel()

        self._dead = True
        code: int | None = returncode
        signal_name: str | None = None
        if returncode < 0:
            code = None
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)

        self._log.info("process_exited", pid=self._proc.pid, code=code, signal=signal_name)
        try:
            self._observer.on_process_exit(code, signal_name)
        finally:
            self._exited.set()
