"""Tests for the relaybridge CLI: version, config, and sessions commands."""

from __future__ import annotations

import json
import logging
import stat
from io import StringIO

import pytest
import structlog
import tomli_w
from click.testing import CliRunner
from fastapi.testclient import TestClient
from rich.console import Console

from relaybridge.cli import _client
from relaybridge.cli.main import cli
from relaybridge.core.constants import ExitCode
from relaybridge.core.events.envelope import EventKind
from relaybridge.core.events.log import EventLog
from relaybridge.core.store.session_log import SessionLogStore, SessionMeta
from relaybridge.server.app import create_app

SESSION_ID = "sess_0123456789ab"

_connect = _client.connect


def _make_console():
    buf = StringIO()
    return Console(file=buf, force_terminal=False, width=200), buf


@pytest.fixture(autouse=True)
def _drop_cli_log_handler():
    """The root group installs a stderr handler bound to CliRunner's stream."""
    yield
    root = logging.getLogger()
    for h in list(root.handlers):
        if isinstance(h.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(h)
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def _no_server(monkeypatch):
    """Sessions commands see no running server unless a test starts one."""
    monkeypatch.setattr(_client, "connect", lambda config: None)


@pytest.fixture
def sessions_dir(tmp_path, monkeypatch):
    d = tmp_path / "sessions"
    monkeypatch.setenv("RELAYBRIDGE_SESSIONS_DIR", str(d))
    return d


@pytest.fixture
def recorded(sessions_dir):
    """One durable session log: ready, init, a finished turn, then dead."""
    store = SessionLogStore(sessions_dir)
    path = store.create(SESSION_ID, SessionMeta(working_directory="/work/proj", model="opus"))
    log = EventLog(capacity=100, path=path)
    log.append(EventKind.STATUS, {"status": "ready"})
    log.append(EventKind.MESSAGE, {"type": "system", "subtype": "init", "session_id": "conv-1"})
    log.append(EventKind.STATUS, {"status": "busy"})
    log.append(EventKind.MESSAGE, {"type": "assistant", "message": {"content": "hi"}})
    log.append(EventKind.STATUS, {"status": "ready"})
    log.append(EventKind.MESSAGE, {"type": "result", "total_cost_usd": 0.0123})
    log.append(EventKind.EXIT, {"code": 0, "signal": None})
    log.append(EventKind.STATUS, {"status": "dead"})
    log.close()
    return path


@pytest.fixture
def served(make_config, sessions_dir, tmp_path, monkeypatch):
    """A server owning sessions_dir with one live session, reachable in-process."""
    with TestClient(create_app(make_config())) as tc:
        monkeypatch.setattr(_client, "connect", _connect)
        monkeypatch.setattr(_client, "_make_http", lambda config: tc)
        monkeypatch.setattr(_client.ServerClient, "close", lambda self: None)
        response = tc.post("/sessions", json={"working_directory": str(tmp_path)})
        assert response.status_code == 201, response.text
        yield tc, response.json()["id"]


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


class TestVersion:
    def test_version_json(self):
        result = CliRunner().invoke(cli, ["version", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert set(data) == {"relaybridge", "python", "platform", "arch", "config_path"}
        assert data["config_path"].endswith("config.toml")

    def test_version_flag(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert result.stdout.startswith("relaybridge ")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


class TestConfigCommands:
    def test_init_writes_defaults_once(self, tmp_path, monkeypatch):
        target = tmp_path / "cfg" / "config.toml"
        monkeypatch.setenv("RELAYBRIDGE_CONFIG", str(target))
        runner = CliRunner()

        result = runner.invoke(cli, ["config", "init"])
        assert result.exit_code == 0, result.output
        assert target.exists()
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

        result = runner.invoke(cli, ["config", "init"])
        assert result.exit_code == 1
        assert "already exists" in result.output

        result = runner.invoke(cli, ["config", "init", "--force"])
        assert result.exit_code == 0

    def test_show_json_reflects_file_and_env(self, tmp_path, monkeypatch):
        target = tmp_path / "config.toml"
        target.write_text(tomli_w.dumps({"server": {"port": 9400, "auth_token": "hidden"}}))
        monkeypatch.setenv("RELAYBRIDGE_CONFIG", str(target))
        monkeypatch.setenv("RELAYBRIDGE_MAX_SESSIONS", "7")

        result = CliRunner().invoke(cli, ["config", "show", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["server"]["port"] == 9400
        assert data["server"]["auth_token"] != "hidden"
        assert data["sessions"]["max_sessions"] == 7

    def test_show_missing_explicit_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELAYBRIDGE_CONFIG", str(tmp_path / "missing.toml"))
        result = CliRunner().invoke(cli, ["config", "show"])
        assert result.exit_code == 2
        assert "Config error" in result.output


# ---------------------------------------------------------------------------
# sessions list
# ---------------------------------------------------------------------------


class TestSessionsList:
    def test_empty(self, sessions_dir):
        from relaybridge.cli._sessions import cmd_sessions_list

        console, buf = _make_console()
        cmd_sessions_list(as_json=False, console=console)
        assert "No sessions recorded" in buf.getvalue()

    def test_table_shows_recorded_session(self, recorded):
        from relaybridge.cli._sessions import cmd_sessions_list

        console, buf = _make_console()
        cmd_sessions_list(as_json=False, console=console)
        output = buf.getvalue()
        assert SESSION_ID in output
        assert "dead" in output
        assert "0.0123" in output
        assert "/work/proj" in output

    def test_json(self, recorded, capsys):
        from relaybridge.cli._sessions import cmd_sessions_list

        console, _ = _make_console()
        cmd_sessions_list(as_json=True, console=console)
        [entry] = json.loads(capsys.readouterr().out)
        assert entry["id"] == SESSION_ID
        assert entry["status"] == "dead"
        assert entry["cli_session_id"] == "conv-1"
        assert entry["total_cost_usd"] == 0.0123

    def test_group_defaults_to_list(self, recorded):
        result = CliRunner().invoke(cli, ["sessions"])
        assert result.exit_code == 0, result.output
        assert SESSION_ID in result.output


# ---------------------------------------------------------------------------
# sessions show
# ---------------------------------------------------------------------------


class TestSessionsShow:
    def test_json_with_history_tail(self, recorded):
        result = CliRunner().invoke(cli, ["sessions", "show", SESSION_ID, "-n", "2", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["id"] == SESSION_ID
        assert data["working_directory"] == "/work/proj"
        assert [e["id"] for e in data["history"]] == [7, 8]
        assert data["history"][-1]["data"] == {"status": "dead"}

    def test_human_output(self, recorded):
        from relaybridge.cli._sessions import cmd_sessions_show

        console, buf = _make_console()
        cmd_sessions_show(session_id=SESSION_ID, lines=20, as_json=False, console=console)
        output = buf.getvalue()
        assert f"Session {SESSION_ID}" in output
        assert "conv-1" in output
        assert "Last 8 events" in output

    def test_not_found_exit_code(self, sessions_dir):
        result = CliRunner().invoke(cli, ["sessions", "show", "sess_ffffffffffff"])
        assert result.exit_code == 3
        assert "not found" in result.output


# ---------------------------------------------------------------------------
# sessions delete
# ---------------------------------------------------------------------------


class TestSessionsDelete:
    def test_delete_with_yes(self, recorded):
        result = CliRunner().invoke(cli, ["sessions", "delete", SESSION_ID, "-y"])
        assert result.exit_code == 0, result.output
        assert not recorded.exists()

    def test_declined_confirmation_keeps_log(self, recorded):
        result = CliRunner().invoke(cli, ["sessions", "delete", SESSION_ID], input="n\n")
        assert result.exit_code == 1
        assert recorded.exists()

    def test_delete_unknown(self, sessions_dir):
        result = CliRunner().invoke(cli, ["sessions", "delete", "sess_ffffffffffff", "-y"])
        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# sessions commands next to a running server
# ---------------------------------------------------------------------------


class TestSessionsWithRunningServer:
    def test_list_reports_live_status_from_server(self, served, capsys):
        from relaybridge.cli._sessions import cmd_sessions_list

        _, session_id = served
        console, _ = _make_console()
        cmd_sessions_list(as_json=True, console=console)
        [entry] = json.loads(capsys.readouterr().out)
        assert entry["id"] == session_id
        assert entry["status"] == "ready"
        assert entry["status_source"] == "server"

    def test_show_reads_history_from_server(self, served, capsys):
        from relaybridge.cli._sessions import cmd_sessions_show

        _, session_id = served
        console, _ = _make_console()
        cmd_sessions_show(session_id=session_id, lines=50, as_json=True, console=console)
        data = json.loads(capsys.readouterr().out)
        assert data["status_source"] == "server"
        assert {"status": "ready"} in [e["data"] for e in data["history"]]

    def test_delete_is_done_by_the_server(self, served, sessions_dir):
        from relaybridge.cli._sessions import cmd_sessions_delete

        tc, session_id = served
        console, buf = _make_console()
        cmd_sessions_delete(session_id=session_id, console=console)
        assert f"Deleted {session_id}" in buf.getvalue()
        assert tc.get(f"/sessions/{session_id}").status_code == 404
        assert not (sessions_dir / f"{session_id}.jsonl").exists()

    def test_unreachable_owner_lists_last_known_status(self, served, monkeypatch, capsys):
        from relaybridge.cli._sessions import cmd_sessions_list

        monkeypatch.setattr(_client, "connect", lambda config: None)
        _, session_id = served
        console, buf = _make_console()
        cmd_sessions_list(as_json=False, console=console)
        assert "Last known status" in buf.getvalue()

        cmd_sessions_list(as_json=True, console=console)
        [entry] = json.loads(capsys.readouterr().out)
        assert entry["id"] == session_id
        assert entry["status"] == "ready"
        assert entry["status_source"] == "log"

    def test_unreachable_owner_refuses_offline_delete(self, served, sessions_dir, monkeypatch):
        from relaybridge.cli._sessions import cmd_sessions_delete

        monkeypatch.setattr(_client, "connect", lambda config: None)
        tc, session_id = served
        console, buf = _make_console()
        with pytest.raises(SystemExit) as exc_info:
            cmd_sessions_delete(session_id=session_id, console=console)
        assert exc_info.value.code == ExitCode.ERROR
        assert "owned by a running server" in buf.getvalue()
        assert (sessions_dir / f"{session_id}.jsonl").exists()
        assert tc.get(f"/sessions/{session_id}").json()["status"] == "ready"
