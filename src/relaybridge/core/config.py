"""RelayBridge configuration: Pydantic model, load, and save."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

from relaybridge.core.constants import (
    CONFIG_FILENAME,
    DEFAULT_BUFFER_SIZE,
    DEFAULT_CLI_COMMAND,
    DEFAULT_HOST,
    DEFAULT_MAX_SESSIONS,
    DEFAULT_PORT,
    DEFAULT_SESSION_TIMEOUT_SECONDS,
    SESSIONS_DIR_NAME,
    SWEEP_INTERVAL_SECONDS,
    TERMINATE_GRACE_SECONDS,
    _default_data_dir,
)
from relaybridge.core.events.log import EvictionPolicy
from relaybridge.core.exceptions import ConfigError, ConfigNotFoundError


def relaybridge_dir() -> Path:
    """
    Return the RelayBridge data directory, creating it if needed.

    macOS : ~/Library/Application Support/relaybridge
    Linux : ~/.config/relaybridge  (or $XDG_CONFIG_HOME/relaybridge)
    Other : ~/.relaybridge
    """
    d = _default_data_dir()
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auth_token: SecretStr | None = None

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("auth_token", mode="before")
    @classmethod
    def empty_token_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CLIConfig(BaseModel):
    """The upstream CLI executable (argv prefix; protocol flags are appended)."""

    command: list[str] = Field(default_factory=lambda: [DEFAULT_CLI_COMMAND])

    @field_validator("command", mode="before")
    @classmethod
    def parse_command(cls, v: Any) -> Any:
        """Accept both an argv list and a shell-style string."""
        if isinstance(v, str):
            v = shlex.split(v)
        if isinstance(v, list) and not v:
            raise ValueError("command must not be empty")
        return v


class SessionsConfig(BaseModel):
    max_sessions: int = DEFAULT_MAX_SESSIONS
    buffer_size: int = DEFAULT_BUFFER_SIZE
    timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS
    sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS
    grace_period_seconds: float = TERMINATE_GRACE_SECONDS
    sessions_dir: str = ""  # empty → <data_dir>/sessions
    eviction: EvictionPolicy = EvictionPolicy.EVICT_OLDEST

    @field_validator("max_sessions", "buffer_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 0:
            raise ValueError("timeout_seconds must be >= 0 (0 disables the idle sweep)")
        return v

    @field_validator("sweep_interval_seconds", "grace_period_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "text"  # "text" | "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("text", "json"):
            raise ValueError("Log format must be 'text' or 'json'")
        return v


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class RelayBridgeConfig(BaseModel):
    """Root RelayBridge configuration model."""

    model_config = {"extra": "forbid"}

    server: ServerConfig = Field(default_factory=ServerConfig)
    cli: CLIConfig = Field(default_factory=CLIConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def sessions_dir(self) -> Path:
        if self.sessions.sessions_dir:
            return Path(self.sessions.sessions_dir).expanduser()
        return relaybridge_dir() / SESSIONS_DIR_NAME


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def _config_file_path() -> Path:
    if env_path := os.environ.get("RELAYBRIDGE_CONFIG"):
        return Path(env_path)
    return _default_data_dir() / CONFIG_FILENAME


def load_config(path: Path | str | None = None) -> RelayBridgeConfig:
    """
    Load RelayBridgeConfig from a TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (RELAYBRIDGE_*)
      2. Config file ($RELAYBRIDGE_CONFIG or <data dir>/config.toml)
      3. Built-in defaults

    A missing default file is not an error; a missing file that was asked
    for explicitly (argument or $RELAYBRIDGE_CONFIG) raises ConfigNotFoundError.
    """
    import tomllib

    explicit = path is not None or bool(os.environ.get("RELAYBRIDGE_CONFIG"))
    cfg_path = Path(path) if path is not None else _config_file_path()

    data: dict[str, Any] = {}
    if cfg_path.exists():
        try:
            with open(cfg_path, "rb") as f:
                data = tomllib.load(f)
        except Exception as exc:
            raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc
    elif explicit:
        raise ConfigNotFoundError(f"Config file not found: {cfg_path}")

    _apply_env_overrides(data)

    try:
        return RelayBridgeConfig.model_validate(data)
    except Exception as exc:
        raise ConfigError(f"Invalid config at {cfg_path}: {exc}") from exc


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay RELAYBRIDGE_* environment variables onto parsed TOML."""

    def _env(name: str) -> str:
        return os.environ.get(name, "")

    if host := _env("RELAYBRIDGE_HOST"):
        data.setdefault("server", {})["host"] = host
    if port := _env("RELAYBRIDGE_PORT"):
        data.setdefault("server", {})["port"] = port
    if token := _env("RELAYBRIDGE_AUTH_TOKEN"):
        data.setdefault("server", {})["auth_token"] = token

    if command := _env("RELAYBRIDGE_CLI_COMMAND"):
        data.setdefault("cli", {})["command"] = command

    if max_sessions := _env("RELAYBRIDGE_MAX_SESSIONS"):
        data.setdefault("sessions", {})["max_sessions"] = max_sessions
    if sessions_dir := _env("RELAYBRIDGE_SESSIONS_DIR"):
        data.setdefault("sessions", {})["sessions_dir"] = sessions_dir

    if level := _env("RELAYBRIDGE_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level


def save_config(config_data: dict[str, Any], path: Path | None = None) -> Path:
    """Write config dict to TOML file with secure permissions (0600)."""
    import tomli_w

    cfg_path = path or _config_file_path()
    cfg_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    # Write atomically
    tmp_path = cfg_path.with_suffix(".tmp")
    try:
        with open(tmp_path, "wb") as f:
            tomli_w.dump(config_data, f)
        tmp_path.rename(cfg_path)
    except Exception as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write config to {cfg_path}: {exc}") from exc

    cfg_path.chmod(0o600)
    return cfg_path


def default_config_data() -> dict[str, Any]:
    """Return the default configuration as a TOML-serialisable dict."""
    cfg = RelayBridgeConfig()
    data = cfg.model_dump(mode="json", exclude={"server": {"auth_token"}})
    return data
