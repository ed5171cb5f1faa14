"""
RelayBridge: remote control plane for line-delimited JSON CLI agents.

RelayBridge spawns a long-running CLI process (Claude Code by default) that
speaks one JSON object per line on stdin/stdout, records everything it says
in a durable, replayable event log, and multiplexes that log to any number
of HTTP/SSE clients. Sessions survive process death: a dead session can be
resumed from its log file.

Package layout (src/relaybridge/):
  core/events/    envelopes and the bounded, fan-out event log
  core/session/   session state machine, registry, upstream protocol helpers
  core/store/     durable per-session JSONL log files
  os/process/     child process supervisor (stdio pipes, signals)
  server/         FastAPI + Server-Sent Events glue
  cli/            Click CLI entry point
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
