"""Tests for the JSON settings store."""

from __future__ import annotations

import json

from quill_local.settings import ENABLED_KEY, MODEL_ID_KEY, SettingsStore


class TestSettingsStore:
    def test_missing_file_reads_empty(self, store):
        assert store.get(ENABLED_KEY) is None
        assert store.get(ENABLED_KEY, False) is False
        assert store.all() == {}

    def test_set_persists(self, store):
        store.set(ENABLED_KEY, True)
        store.set(MODEL_ID_KEY, "qwen3-1.7b")

        reopened = SettingsStore(store.path)
        assert reopened.get(ENABLED_KEY) is True
        assert reopened.all() == {ENABLED_KEY: True, MODEL_ID_KEY: "qwen3-1.7b"}

    def test_set_merges_with_other_writers(self, store):
        other = SettingsStore(store.path)
        store.set(ENABLED_KEY, True)
        other.set(MODEL_ID_KEY, "qwen3-4b")

        assert store.all() == {ENABLED_KEY: True, MODEL_ID_KEY: "qwen3-4b"}

    def test_no_temp_file_left(self, store):
        store.set(ENABLED_KEY, True)
        assert [p.name for p in store.path.parent.iterdir()] == ["settings.json"]

    def test_corrupt_file_treated_as_empty(self, store):
        store.path.write_text("{not json", encoding="utf-8")
        assert store.all() == {}

        store.set(ENABLED_KEY, False)
        assert json.loads(store.path.read_text(encoding="utf-8")) == {ENABLED_KEY: False}

    def test_non_object_file_ignored(self, store):
        store.path.write_text("[1, 2]", encoding="utf-8")
        assert store.get(ENABLED_KEY, True) is True

    def test_creates_parent_directory(self, tmp_path):
        store = SettingsStore(tmp_path / "nested" / "settings.json")
        store.set(ENABLED_KEY, True)
        assert store.path.is_file()

    def test_default_path_honours_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QUILL_LOCAL_HOME", str(tmp_path))
        assert SettingsStore().path == tmp_path / "settings.json"
