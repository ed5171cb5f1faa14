"""RelayBridge exception hierarchy."""

from __future__ import annotations


class RelayBridgeError(Exception):
    """Base exception for all RelayBridge errors."""


class ConfigError(RelayBridgeError):
    """Raised when the configuration is invalid or cannot be read."""


class ConfigNotFoundError(ConfigError):
    """Raised when an explicitly requested configuration file does not exist."""


class SessionError(RelayBridgeError):
    """Raised when session management fails."""


class SessionNotFoundError(SessionError):
    """Raised when a session id has neither a live entry nor a durable log file."""


class SessionCapacityError(SessionError):
    """Raised when creating or resuming would exceed the configured session limit."""


class SessionsDirectoryInUseError(SessionError):
    """Raised when another running server owns the sessions directory."""
