"""Tests for amux_core.state_store: decoding, retention and the locked writer."""

import json
import threading

import pytest

from amux_core.agents import HealthState, LifecycleState
from amux_core.identity import UnsafeIdentifierError
from amux_core.state_store import (
    SessionStateStore,
    StateFileError,
    StateLockTimeout,
    StateSnapshot,
    _lock,
    health_issues,
    health_of,
    normalize_state,
    parse_state_text,
    write_session_state,
)


def _write(path, data):
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)


class TestParseStateText:
    def test_sessions_in_file_order(self):
        snap = parse_state_text(json.dumps({
            "last_updated": "2025-08-20T10:00:00Z",
            "sessions": {"b-1": "idle", "a-1": {"state": "busy"}},
        }))
        assert list(snap.sessions) == ["b-1", "a-1"]
        assert snap.last_updated == "2025-08-20T10:00:00Z"
        assert "a-1" in snap
        assert len(snap) == 2

    def test_missing_sessions_is_empty(self):
        assert len(parse_state_text("{}")) == 0

    def test_invalid_json(self):
        with pytest.raises(StateFileError, match="invalid JSON"):
            parse_state_text('{"sessions": {')

    def test_top_level_must_be_object(self):
        with pytest.raises(StateFileError):
            parse_state_text("[1, 2]")

    def test_sessions_must_be_object(self):
        with pytest.raises(StateFileError, match="sessions"):
            parse_state_text('{"sessions": ["a"]}')


class TestPayloadHelpers:
    def test_normalize_state(self):
        assert normalize_state("busy") is LifecycleState.BUSY
        assert normalize_state({"state": "DONE"}) is LifecycleState.DONE
        assert normalize_state({"state": "napping"}) is LifecycleState.UNKNOWN
        assert normalize_state({}) is LifecycleState.UNKNOWN
        assert normalize_state(None) is LifecycleState.UNKNOWN

    def test_health_of(self):
        assert health_of("busy") is HealthState.HEALTHY
        assert health_of({"state": "busy"}) is HealthState.HEALTHY
        assert health_of({"health": {"state": "dead"}}) is HealthState.DEAD
        assert health_of({"health": "interrupted"}) is HealthState.INTERRUPTED

    def test_health_issues(self):
        assert health_issues({"health": {"state": "interrupted", "issues": "no heartbeat"}}) == "no heartbeat"
        assert health_issues({"health": {"state": "healthy"}}) is None
        assert health_issues("idle") is None


class TestSessionStateStore:
    def test_empty_before_first_read(self, tmp_path):
        store = SessionStateStore(tmp_path / "agent_states.json")
        assert store.current_snapshot() == StateSnapshot()
        assert not store.loaded

    def test_refresh_retains_snapshot(self, tmp_path):
        path = tmp_path / "agent_states.json"
        _write(path, {"sessions": {"factory-TC-001": "busy"}})
        store = SessionStateStore(path)
        snap = store.refresh()
        assert snap is store.current_snapshot()
        assert store.loaded

    def test_missing_file_is_transient(self, tmp_path):
        store = SessionStateStore(tmp_path / "missing.json")
        assert store.refresh() is None
        assert not store.loaded

    def test_vanished_file_keeps_previous(self, tmp_path):
        path = tmp_path / "agent_states.json"
        _write(path, {"sessions": {"qa-TC-001": "idle"}})
        store = SessionStateStore(path)
        store.refresh()
        path.unlink()
        assert store.refresh() is None
        assert "qa-TC-001" in store.current_snapshot()

    def test_malformed_keeps_previous(self, tmp_path):
        path = tmp_path / "agent_states.json"
        _write(path, {"sessions": {"qa-TC-001": "idle"}})
        store = SessionStateStore(path)
        store.refresh()
        _write(path, '{"sessions": {"qa-TC-001": ')
        with pytest.raises(StateFileError):
            store.refresh()
        assert store.current_snapshot().get("qa-TC-001") == "idle"


class TestWriteSessionState:
    def test_creates_file(self, tmp_path):
        path = tmp_path / "_featstate" / "agent_states.json"
        data = write_session_state(path, "factory-TC-001", LifecycleState.BUSY, origin="test")
        on_disk = json.loads(path.read_text())
        assert on_disk == data
        entry = on_disk["sessions"]["factory-TC-001"]
        assert entry["state"] == "busy"
        assert entry["origin"] == "test"
        assert on_disk["last_updated"] == entry["timestamp"]

    def test_preserves_other_sessions_and_fields(self, tmp_path):
        path = tmp_path / "agent_states.json"
        _write(path, {"sessions": {
            "planner-alpha": "idle",
            "factory-TC-001": {"state": "busy", "health": {"state": "healthy"}},
        }})
        write_session_state(path, "factory-TC-001", LifecycleState.DONE)
        sessions = json.loads(path.read_text())["sessions"]
        assert sessions["planner-alpha"] == "idle"
        assert sessions["factory-TC-001"]["state"] == "done"
        assert sessions["factory-TC-001"]["health"] == {"state": "healthy"}

    def test_no_temp_files_left(self, tmp_path):
        path = tmp_path / "agent_states.json"
        write_session_state(path, "qa-1", LifecycleState.IDLE)
        leftovers = [p.name for p in tmp_path.iterdir()
                     if p.name not in ("agent_states.json", "agent_states.json.lock")]
        assert leftovers == []

    def test_malformed_file_not_overwritten(self, tmp_path):
        path = tmp_path / "agent_states.json"
        _write(path, "not json")
        with pytest.raises(StateFileError):
            write_session_state(path, "qa-1", LifecycleState.IDLE)
        assert path.read_text() == "not json"

    def test_unsafe_identifier(self, tmp_path):
        path = tmp_path / "agent_states.json"
        with pytest.raises(UnsafeIdentifierError):
            write_session_state(path, "bad name", LifecycleState.IDLE)
        assert not path.exists()


class TestLock:
    def test_timeout_when_held(self, tmp_path):
        path = tmp_path / "agent_states.json"
        held = threading.Event()
        release = threading.Event()

        def holder():
            with _lock(path):
                held.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert held.wait(5)
            with pytest.raises(StateLockTimeout):
                with _lock(path, timeout=0.1):
                    pass
        finally:
            release.set()
            t.join()

    def test_reacquire_after_release(self, tmp_path):
        path = tmp_path / "agent_states.json"
        with _lock(path):
            pass
        with _lock(path, timeout=0.1):
            pass

