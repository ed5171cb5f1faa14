"""RelayBridge constants: filesystem layout, protocol defaults, timeouts, and limits."""

from __future__ import annotations

import os
import sys
from enum import IntEnum
from pathlib import Path

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    NOT_FOUND = 3


# ---------------------------------------------------------------------------
# Platform-specific data directory
# ---------------------------------------------------------------------------


def _default_data_dir() -> Path:
    """
    Return the platform-appropriate RelayBridge data directory.

    macOS : ~/Library/Application Support/relaybridge
    Linux : ~/.config/relaybridge
    Other : ~/.relaybridge
    """
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "relaybridge"
    if sys.platform.startswith("linux"):
        xdg = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
        return xdg / "relaybridge"
    return Path.home() / ".relaybridge"


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

CONFIG_FILENAME = "config.toml"
SESSIONS_DIR_NAME = "sessions"
SESSION_LOG_SUFFIX = ".jsonl"
SESSION_ID_PREFIX = "sess_"
SERVER_PID_FILENAME = "server.pid"  # owner of a sessions directory

# ---------------------------------------------------------------------------
# Upstream CLI
# ---------------------------------------------------------------------------

DEFAULT_CLI_COMMAND = "claude"

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
SSE_KEEPALIVE_SECONDS = 15.0
DEFAULT_HISTORY_LINES = 1000

# ---------------------------------------------------------------------------
# Timeouts and limits
# ---------------------------------------------------------------------------

DEFAULT_MAX_SESSIONS = 10
DEFAULT_BUFFER_SIZE = 1000  # envelopes kept in memory per session
DEFAULT_SESSION_TIMEOUT_SECONDS = 1800  # idle time before the sweep kills a process
SWEEP_INTERVAL_SECONDS = 60.0
TERMINATE_GRACE_SECONDS = 5.0  # SIGTERM → SIGKILL escalation
READER_DRAIN_SECONDS = 1.0  # wait for pipe readers after exit
MAX_LINE_BYTES = 32 * 1024 * 1024  # single stdout line limit
