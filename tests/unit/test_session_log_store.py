"""Unit tests for relaybridge.core.store.session_log: durable log files on disk."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from relaybridge.core.events.envelope import EventKind
from relaybridge.core.events.log import EventLog
from relaybridge.core.exceptions import SessionNotFoundError
from relaybridge.core.store.session_log import SessionLogStore, SessionMeta


@pytest.fixture
def store(tmp_path: Path) -> SessionLogStore:
    return SessionLogStore(tmp_path / "sessions")


def _record_session(store: SessionLogStore, session_id: str, messages: list[dict]) -> Path:
    path = store.create(session_id, SessionMeta(working_directory="/tmp/proj", model="opus"))
    log = EventLog(capacity=100, path=path)
    log.append(EventKind.STATUS, {"status": "ready"})
    for message in messages:
        log.append(EventKind.MESSAGE, message)
    log.close()
    return path


# ---------------------------------------------------------------------------
# Paths and creation
# ---------------------------------------------------------------------------


class TestPaths:
    def test_path_is_id_plus_suffix(self, store: SessionLogStore) -> None:
        assert store.path_for("sess_0123456789ab") == store.directory / "sess_0123456789ab.jsonl"

    @pytest.mark.parametrize("bad", ["", "../escape", "a/b", "sess.1", "sess 1"])
    def test_unsafe_ids_are_not_found(self, store: SessionLogStore, bad: str) -> None:
        with pytest.raises(SessionNotFoundError):
            store.path_for(bad)
        assert store.exists(bad) is False

    def test_create_writes_meta_line(self, store: SessionLogStore) -> None:
        path = store.create(
            "sess_0123456789ab",
            SessionMeta(working_directory="/tmp/proj", model="opus", resume_conversation_id=""),
        )
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        meta = json.loads(lines[0])
        assert meta["id"] == 0
        assert meta["event"] == "meta"
        assert meta["data"] == {
            "working_directory": "/tmp/proj",
            "model": "opus",
            "resume_conversation_id": None,
        }
        assert isinstance(meta["timestamp"], float)


# ---------------------------------------------------------------------------
# Listing and deletion
# ---------------------------------------------------------------------------


class TestListingAndDeletion:
    def test_session_ids_sorted_and_filtered(self, store: SessionLogStore) -> None:
        store.create("sess_bbbbbbbbbbbb", SessionMeta(working_directory="/b"))
        store.create("sess_aaaaaaaaaaaa", SessionMeta(working_directory="/a"))
        (store.directory / "notes.txt").write_text("x")
        (store.directory / "sub.jsonl").mkdir()
        assert store.session_ids() == ["sess_aaaaaaaaaaaa", "sess_bbbbbbbbbbbb"]

    def test_missing_directory_lists_nothing(self, tmp_path: Path) -> None:
        assert SessionLogStore(tmp_path / "nowhere").session_ids() == []

    def test_delete_reports_whether_a_file_was_removed(self, store: SessionLogStore) -> None:
        store.create("sess_0123456789ab", SessionMeta(working_directory="/tmp"))
        assert store.delete("sess_0123456789ab") is True
        assert store.exists("sess_0123456789ab") is False
        assert store.delete("sess_0123456789ab") is False


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


class TestInspect:
    def test_recovers_summary_fields(self, store: SessionLogStore) -> None:
        _record_session(
            store,
            "sess_0123456789ab",
            [
                {"type": "system", "subtype": "init", "session_id": "conv-1"},
                {"type": "result", "total_cost_usd": 0.02},
                {"type": "result", "total_cost_usd": 0.05},
            ],
        )
        record = store.inspect("sess_0123456789ab")
        assert record is not None
        assert record.meta == SessionMeta(working_directory="/tmp/proj", model="opus")
        assert record.cli_session_id == "conv-1"
        assert record.total_cost_usd == 0.05
        assert record.last_sequence == 4
        assert record.created_at <= record.last_active_at

    def test_last_init_wins(self, store: SessionLogStore) -> None:
        _record_session(
            store,
            "sess_0123456789ab",
            [
                {"type": "system", "subtype": "init", "session_id": "conv-old"},
                {"type": "system", "subtype": "init", "session_id": "conv-new"},
            ],
        )
        record = store.inspect("sess_0123456789ab")
        assert record is not None
        assert record.cli_session_id == "conv-new"

    def test_no_init_means_no_upstream_id(self, store: SessionLogStore) -> None:
        _record_session(store, "sess_0123456789ab", [{"type": "assistant"}])
        record = store.inspect("sess_0123456789ab")
        assert record is not None
        assert record.cli_session_id is None
        assert record.total_cost_usd == 0.0

    def test_corrupt_tail_is_tolerated(self, store: SessionLogStore) -> None:
        path = _record_session(
            store,
            "sess_0123456789ab",
            [{"type": "system", "subtype": "init", "session_id": "conv-1"}],
        )
        with path.open("a", encoding="utf-8") as fh:
            fh.write('{"id": 3, "event": "mess')
        record = store.inspect("sess_0123456789ab")
        assert record is not None
        assert record.cli_session_id == "conv-1"
        assert record.last_sequence == 2

    def test_last_recorded_status(self, store: SessionLogStore) -> None:
        path = _record_session(store, "sess_0123456789ab", [{"type": "assistant"}])
        record = store.inspect("sess_0123456789ab")
        assert record is not None
        assert record.last_status == "ready"

        log = EventLog(capacity=10, path=path)
        log.load_from_file(path)
        log.append(EventKind.STATUS, {"status": "dead"})
        log.close()
        record = store.inspect("sess_0123456789ab")
        assert record is not None
        assert record.last_status == "dead"

    def test_missing_file_is_none(self, store: SessionLogStore) -> None:
        assert store.inspect("sess_0123456789ab") is None
