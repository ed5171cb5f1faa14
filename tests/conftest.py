"""Shared fixtures: a fake upstream CLI and configs that point at it."""

from __future__ import annotations

import asyncio
import sys
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from relaybridge.core.config import RelayBridgeConfig

FAKE_CLI = Path(__file__).resolve().parent / "fixtures" / "fake_cli.py"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep every test away from the real data directory and RELAYBRIDGE_* settings."""
    for name in (
        "RELAYBRIDGE_CONFIG",
        "RELAYBRIDGE_HOST",
        "RELAYBRIDGE_PORT",
        "RELAYBRIDGE_AUTH_TOKEN",
        "RELAYBRIDGE_CLI_COMMAND",
        "RELAYBRIDGE_MAX_SESSIONS",
        "RELAYBRIDGE_SESSIONS_DIR",
        "RELAYBRIDGE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def fake_cli_command() -> list[str]:
    return [sys.executable, str(FAKE_CLI)]


@pytest.fixture
def make_config(tmp_path: Path, fake_cli_command: list[str]) -> Callable[..., RelayBridgeConfig]:
    """Build a RelayBridgeConfig that spawns the fake CLI and logs under tmp_path."""

    def _make(**sessions: object) -> RelayBridgeConfig:
        data: dict = {
            "cli": {"command": fake_cli_command},
            "sessions": {
                "sessions_dir": str(tmp_path / "sessions"),
                "grace_period_seconds": 2.0,
                **sessions,
            },
        }
        return RelayBridgeConfig.model_validate(data)

    return _make


@pytest.fixture
def wait_until():
    """Return an async helper that polls *predicate* until true or fails the test."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                pytest.fail(f"condition not met within {timeout}s")
            await asyncio.sleep(0.02)

    return _wait


@pytest.fixture
def wait_until_sync():
    """Blocking variant for tests that drive a server through TestClient."""

    def _wait(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                pytest.fail(f"condition not met within {timeout}s")
            time.sleep(0.05)

    return _wait
