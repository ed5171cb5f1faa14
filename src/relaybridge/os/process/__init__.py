"""Child process supervision over stdio pipes (POSIX signals)."""

from relaybridge.os.process.supervisor import (
    ProcessConfig,
    ProcessObserver,
    ProcessSupervisor,
    parse_stdout_line,
)

__all__ = ["ProcessConfig", "ProcessObserver", "ProcessSupervisor", "parse_stdout_line"]
