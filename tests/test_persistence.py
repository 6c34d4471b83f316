"""
Tests for the key-value adapters and the app data loader.
"""

import json

import pytest

from antidip.errors import PersistenceError
from antidip.persistence import (
    AppDataTaskLoader,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    read_json,
    write_json,
)


# -----------------------------------------------------------------------------
# Test 1: JSON helpers
# -----------------------------------------------------------------------------
class TestJsonHelpers:

    def test_missing_key_returns_default(self, store):
        assert read_json(store, "absent", default=[]) == []

    def test_corrupt_value_raises(self, store):
        store.set("broken", "{not json")
        with pytest.raises(PersistenceError) as exc_info:
            read_json(store, "broken")
        assert exc_info.value.details["key"] == "broken"

    def test_round_trip(self, store):
        write_json(store, "k", {"a": [1, 2]})
        assert read_json(store, "k") == {"a": [1, 2]}


# -----------------------------------------------------------------------------
# Test 2: File store
# -----------------------------------------------------------------------------
class TestJsonFileStore:

    def test_set_get_remove(self, tmp_path):
        store = JsonFileKeyValueStore(tmp_path / "state" / "store.json")
        store.set("a", "1")
        store.set("b", "2")
        store.remove("a")
        assert store.get("a") is None
        assert store.get("b") == "2"

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "store.json"
        JsonFileKeyValueStore(path).set("cooldownLedger", '{"rule:x": 1}')
        assert JsonFileKeyValueStore(path).get("cooldownLedger") == '{"rule:x": 1}'
        assert not path.with_suffix(".tmp").exists()

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2")
        with pytest.raises(PersistenceError):
            JsonFileKeyValueStore(path).get("anything")

    def test_non_object_file_raises(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2]")
        with pytest.raises(PersistenceError):
            JsonFileKeyValueStore(path).get("anything")


# -----------------------------------------------------------------------------
# Test 3: App data loader
# -----------------------------------------------------------------------------
APP_DATA = {
    "pillars": [
        {
            "id": "p1",
            "name": "Launch",
            "completion": 92,
            "days_stuck": 4,
            "tasks": [
                {"id": 1, "name": "Docs", "progress": 95},
                {"name": "missing id"},
                {"id": 2, "name": "Bad", "progress": "lots"},
                "not a task",
            ],
        },
        {"id": "p2", "name": "Health", "tasks": [{"id": 3, "name": "Run", "progress": 10}]},
    ],
    "sprint": {"week": 11, "year": 2026, "progress": [{"day": "mon", "checked": True}]},
    "user": {"id": "u1", "name": "Sam", "streak": 3},
    "customRules": [
        {"id": "r1", "name": "ok", "trigger": "data", "condition": "true", "action": "voice"},
        {"id": "r2", "name": "bad", "trigger": "sometimes", "condition": "true", "action": "voice"},
        {"name": "no id"},
    ],
}


@pytest.fixture
def loader():
    return AppDataTaskLoader(InMemoryKeyValueStore({"appData": json.dumps(APP_DATA)}))


class TestAppDataTaskLoader:

    @pytest.mark.asyncio
    async def test_malformed_tasks_skipped(self, loader):
        tasks = await loader.load_tasks()
        assert [t.id for t in tasks] == [1, 3]

    @pytest.mark.asyncio
    async def test_pillars(self, loader):
        pillars = await loader.load_pillars()
        assert [p.id for p in pillars] == ["p1", "p2"]
        assert pillars[0].completion == 92
        assert pillars[0].days_stuck == 4

    @pytest.mark.asyncio
    async def test_snapshot(self, loader):
        snapshot = await loader.load_snapshot()
        context = snapshot.condition_context()
        assert context["user"]["streak"] == 3
        assert context["sprint"]["progress"] == [{"day": "mon", "checked": True}]
        assert len(context["pillars"]) == 2

    @pytest.mark.asyncio
    async def test_invalid_rules_skipped(self, loader):
        rules = await loader.load_rules()
        assert [r.id for r in rules] == ["r1"]

    @pytest.mark.asyncio
    async def test_empty_store(self):
        loader = AppDataTaskLoader(InMemoryKeyValueStore())
        assert await loader.load_tasks() == []
        assert await loader.load_rules() == []

    @pytest.mark.asyncio
    async def test_corrupt_document_raises(self):
        loader = AppDataTaskLoader(InMemoryKeyValueStore({"appData": "{oops"}))
        with pytest.raises(PersistenceError):
            await loader.load_tasks()
