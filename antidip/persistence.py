"""
Persistence Port & Adapters

The key-value store is the only shared mutable resource between the engine
and the host application. Values are JSON-serialized strings.

IMPORTANT:
- The engine treats the store as last-writer-wins
- Adapters raise PersistenceError on read/write failure; engine callers
  catch it and degrade (empty data, fail-closed cooldowns)
- The task loader skips malformed tasks with a warning instead of failing
  the whole load
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import PersistenceError
from .rule_model import CustomRule
from .task_model import AppSnapshot, Pillar, Sprint, Task, UserProfile

logger = logging.getLogger("persistence")

APP_DATA_KEY = "appData"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class TaskLoader(Protocol):
    async def load_tasks(self) -> List[Task]:
        ...


# -----------------------------------------------------------------------------
# JSON helpers
# -----------------------------------------------------------------------------
def read_json(store: KeyValueStore, key: str, default: Any = None) -> Any:
    """
    Read and decode a JSON value.

    Missing key returns default. Store failures propagate as
    PersistenceError; corrupt JSON is raised as PersistenceError too so the
    caller can tell "absent" from "unreadable".
    """
    raw = store.get(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError as e:
        raise PersistenceError("decode", key, str(e))


def write_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, default=str))


# -----------------------------------------------------------------------------
# Adapters
# -----------------------------------------------------------------------------
class InMemoryKeyValueStore:
    """Dict-backed store for tests and embedded use."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileKeyValueStore:
    """
    Store backed by a single JSON object file.

    Every write rewrites the file atomically (temp file + replace) under a
    lock so a crash never leaves a half-written document.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = threading.Lock()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug(f"Could not create store directory: {e}")

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (ValueError, OSError) as e:
            raise PersistenceError("read", str(self._path), str(e))
        if not isinstance(data, dict):
            raise PersistenceError("read", str(self._path), f"expected object, got {type(data).__name__}")
        return data

    def _save(self, data: Dict[str, str]) -> None:
        temp_file = self._path.with_suffix(".tmp")
        try:
            temp_file.write_text(json.dumps(data, indent=2))
            temp_file.replace(self._path)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise PersistenceError("write", str(self._path), str(e))

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)


# -----------------------------------------------------------------------------
# App data loader
# -----------------------------------------------------------------------------
class AppDataTaskLoader:
    """
    Reads the host application's stored document:

        {"pillars": [{..., "tasks": [...]}], "sprint": {...},
         "user": {...}, "customRules": [...]}
    """

    def __init__(self, store: KeyValueStore, key: str = APP_DATA_KEY):
        self._store = store
        self._key = key

    def _document(self) -> Dict[str, Any]:
        data = read_json(self._store, self._key, default={})
        if not isinstance(data, dict):
            raise PersistenceError("read", self._key, "app data is not an object")
        return data

    @staticmethod
    def _parse_tasks(raw_tasks: Any, pillar_id: Any) -> List[Task]:
        tasks = []
        for raw in raw_tasks or []:
            if not isinstance(raw, dict):
                logger.warning(f"Skipping non-object task in pillar {pillar_id}")
                continue
            try:
                tasks.append(Task.from_dict(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed task in pillar {pillar_id}: {e}")
        return tasks

    def _pillars(self, data: Dict[str, Any]) -> List[Pillar]:
        pillars = []
        for raw in data.get("pillars") or []:
            if not isinstance(raw, dict):
                continue
            tasks = self._parse_tasks(raw.get("tasks"), raw.get("id"))
            try:
                pillars.append(Pillar.from_dict(raw, tasks=tuple(tasks)))
            except ValueError as e:
                logger.warning(f"Skipping malformed pillar {raw.get('id')}: {e}")
        return pillars

    async def load_tasks(self) -> List[Task]:
        """Flattened task list across all goals."""
        return [t for p in self._pillars(self._document()) for t in p.tasks]

    async def load_pillars(self) -> List[Pillar]:
        return self._pillars(self._document())

    async def load_snapshot(self) -> AppSnapshot:
        data = self._document()
        return AppSnapshot(
            pillars=tuple(self._pillars(data)),
            sprint=Sprint.from_dict(data.get("sprint") if isinstance(data.get("sprint"), dict) else None),
            user=UserProfile.from_dict(data.get("user") if isinstance(data.get("user"), dict) else None),
        )

    async def load_rules(self) -> List[CustomRule]:
        rules = []
        for raw in self._document().get("customRules") or []:
            if not isinstance(raw, dict) or "id" not in raw:
                continue
            try:
                rules.append(CustomRule.from_dict(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed rule {raw.get('id')}: {e}")
        return rules
