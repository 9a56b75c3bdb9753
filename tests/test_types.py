"""Tests for type definitions."""

import json

import pytest

from hubagent.types import EnvVarDiff, EnvVarEntry, EnvVarState, Window, window_name_for


class TestWindow:
    def test_window_name(self):
        assert window_name_for("abc") == "tab_abc"
        assert Window(tab_id="abc", window_index=2).window_name == "tab_abc"

    def test_status(self):
        w = Window(tab_id="t1", window_index=1)
        assert w.status == "running"
        w.ended = True
        assert w.status == "stopped"

    def test_default_command_is_empty(self):
        assert Window(tab_id="t1", window_index=1).command == []


class TestEnvVarState:
    def test_json_roundtrip(self):
        state = EnvVarState(
            workspace_id="ws1",
            repository_id="repo1",
            env_vars={"A": EnvVarEntry(value="1", synced_at="2024-01-01T00:00:00+00:00")},
            last_sync="2024-01-01T00:00:00+00:00",
        )
        restored = EnvVarState.from_json(state.to_json())
        assert restored == state

    def test_camel_case_keys(self):
        data = json.loads(EnvVarState.from_values("ws1", None, {"A": "1"}).to_json())
        assert set(data) == {"version", "lastSync", "workspaceId", "repositoryId", "envVars"}
        assert set(data["envVars"]["A"]) == {"value", "encrypted", "syncedAt"}

    def test_from_dict_missing_fields(self):
        state = EnvVarState.from_dict({})
        assert state.workspace_id == ""
        assert state.env_vars == {}
        assert state.version == 1

    def test_from_dict_plain_values(self):
        state = EnvVarState.from_dict({"envVars": {"A": "1", "B": 2}})
        assert state.values() == {"A": "1", "B": "2"}

    def test_from_values_stamps_sync_time(self):
        state = EnvVarState.from_values("ws1", "repo1", {"A": "1"})
        assert state.last_sync
        assert state.env_vars["A"].synced_at == state.last_sync

    @pytest.mark.parametrize("content", ["", "{", "[]", '{"envVars": []}'])
    def test_from_json_rejects(self, content):
        with pytest.raises(ValueError):
            EnvVarState.from_json(content)


class TestEnvVarDiff:
    def test_empty(self):
        assert EnvVarDiff().is_empty
        assert EnvVarDiff().counts() == {"added": 0, "removed": 0, "changed": 0}

    def test_counts(self):
        diff = EnvVarDiff(to_add={"A": "1"}, to_remove=["B", "C"], to_change={"D": ("x", "y")})
        assert not diff.is_empty
        assert diff.counts() == {"added": 1, "removed": 2, "changed": 1}
