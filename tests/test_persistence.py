"""Tests for event and action persistence."""

import json
from datetime import datetime, timezone

import pytest

from agent_runtime.errors import FatalConfigurationError, ValidationError
from agent_runtime.models.action import Action, ExecutionResult
from agent_runtime.models.storage import ActionStatus, HistoryFilter
from agent_runtime.persistence.jsonfile import read_json, write_json_atomic
from agent_runtime.persistence.store import (
    FilePersistence,
    InMemoryPersistence,
    create_persistence,
    pending_actions,
)


def _make_action(action_type: str = "execute_transfer", **params) -> Action:
    return Action(type=action_type, params=params or {"to": "0xabc", "amount": "1"})


class TestActionLifecycle:
    def test_pending_then_completed(self):
        persistence = InMemoryPersistence(agent_id="agent-1")
        entry = persistence.save_action(_make_action())

        assert entry.id.startswith("act_")
        assert entry.status == ActionStatus.PENDING
        assert entry.agent_id == "agent-1"
        assert pending_actions(persistence) == [entry]

        persistence.complete_action(entry.id, ExecutionResult(success=True, tx_hash="0x1"))

        stored = persistence.get_actions()[0]
        assert stored.status == ActionStatus.SUCCESS
        assert stored.result.tx_hash == "0x1"
        assert pending_actions(persistence) == []

    def test_completes_exactly_once(self):
        persistence = InMemoryPersistence()
        entry = persistence.save_action(_make_action())
        persistence.complete_action(entry.id, ExecutionResult(success=False, error="boom"))

        with pytest.raises(ValidationError, match="already completed"):
            persistence.complete_action(entry.id, ExecutionResult(success=True))
        assert persistence.get_actions()[0].status == ActionStatus.FAILED

    def test_unknown_entry(self):
        with pytest.raises(ValidationError, match="Unknown action entry"):
            InMemoryPersistence().complete_action("act_missing", ExecutionResult(success=True))

    def test_save_with_result_is_terminal(self):
        persistence = InMemoryPersistence()
        entry = persistence.save_action(_make_action(), ExecutionResult(success=False))
        assert entry.status == ActionStatus.FAILED


class TestQueries:
    def test_filters(self):
        persistence = InMemoryPersistence(agent_id="a")
        for i in range(4):
            persistence.save_action(_make_action(i=i), ExecutionResult(success=i % 2 == 0))
        persistence.save_event({"n": 1})

        failed = persistence.get_actions(HistoryFilter(status=ActionStatus.FAILED))
        assert [e.action.params["i"] for e in failed] == [1, 3]

        recent = persistence.get_recent_actions(2)
        assert [e.action.params["i"] for e in recent] == [2, 3]

        assert persistence.get_actions(HistoryFilter(agent_id="b")) == []
        assert persistence.get_actions(HistoryFilter(limit=0)) == []

        first = persistence.get_actions()[0]
        since = persistence.get_actions(HistoryFilter(since=first.timestamp))
        assert len(since) == 4

        history = persistence.get_history()
        assert len(history.events) == 1
        assert len(history.actions) == 4

    def test_status_filter_ignores_events(self):
        persistence = InMemoryPersistence()
        persistence.save_event({"n": 1})
        assert persistence.get_events(HistoryFilter(status=ActionStatus.SUCCESS)) == []
        assert len(persistence.get_events()) == 1

    def test_size_and_clear(self):
        persistence = InMemoryPersistence()
        persistence.save_event({"n": 1})
        persistence.save_action(_make_action())
        assert persistence.size() == {"events": 1, "actions": 1}

        persistence.clear()
        assert persistence.size() == {"events": 0, "actions": 0}


class TestFilePersistence:
    def test_round_trip(self, tmp_path):
        persistence = FilePersistence(str(tmp_path), agent_id="agent-1")
        before = datetime.now(timezone.utc)
        event = persistence.save_event({"goal": "transfer"}, metadata={"trigger_id": "t1"})
        entry = persistence.save_action(_make_action())
        persistence.complete_action(entry.id, ExecutionResult(success=True, tx_hash="0xfeed"))

        reloaded = FilePersistence(str(tmp_path), agent_id="agent-1")

        assert [e.model_dump() for e in reloaded.get_events()] == [event.model_dump()]
        assert reloaded.get_events()[0].timestamp >= before
        actions = reloaded.get_actions()
        assert actions[0].id == entry.id
        assert actions[0].status == ActionStatus.SUCCESS
        assert actions[0].result.tx_hash == "0xfeed"

    def test_writes_plain_json_without_temp_files(self, tmp_path):
        persistence = FilePersistence(str(tmp_path))
        persistence.save_action(_make_action())
        persistence.save_event({"n": 1})

        names = sorted(p.name for p in tmp_path.iterdir())
        assert names == ["actions.json", "events.json"]
        assert json.loads((tmp_path / "actions.json").read_text())[0]["status"] == "pending"

    def test_unserializable_event_leaves_log_unchanged(self, tmp_path):
        persistence = FilePersistence(str(tmp_path))
        persistence.save_event({"n": 1})

        with pytest.raises(ValidationError, match="not JSON serializable"):
            persistence.save_event({"topic": b"\xff\xfe"})

        assert persistence.size() == {"events": 1, "actions": 0}
        persistence.save_event({"ok": 1})
        reloaded = FilePersistence(str(tmp_path))
        assert [e.event for e in reloaded.get_events()] == [{"n": 1}, {"ok": 1}]

    def test_failed_write_leaves_completion_pending(self, tmp_path, monkeypatch):
        persistence = FilePersistence(str(tmp_path))
        entry = persistence.save_action(_make_action())

        def fail(path, data):
            raise OSError("disk full")

        monkeypatch.setattr("agent_runtime.persistence.store.write_json_atomic", fail)
        with pytest.raises(OSError):
            persistence.complete_action(entry.id, ExecutionResult(success=True))
        assert persistence.get_actions()[0].status == ActionStatus.PENDING

        monkeypatch.undo()
        persistence.complete_action(entry.id, ExecutionResult(success=True))
        assert FilePersistence(str(tmp_path)).get_actions()[0].status == ActionStatus.SUCCESS

    def test_factory(self, tmp_path):
        assert isinstance(create_persistence(), InMemoryPersistence)
        assert isinstance(create_persistence("file", str(tmp_path)), FilePersistence)
        with pytest.raises(FatalConfigurationError):
            create_persistence("file")


class TestJsonFile:
    def test_missing_file_returns_default(self, tmp_path):
        assert read_json(tmp_path / "nope.json", []) == []

    def test_atomic_write_replaces_content(self, tmp_path):
        path = tmp_path / "data.json"
        write_json_atomic(path, [1])
        write_json_atomic(path, {"a": 2})
        assert read_json(path, None) == {"a": 2}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]

    def test_failed_write_leaves_original(self, tmp_path):
        path = tmp_path / "data.json"
        write_json_atomic(path, [1])
        with pytest.raises(TypeError):
            write_json_atomic(path, {"bad": object()})
        assert read_json(path, None) == [1]
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]
