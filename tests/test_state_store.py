import json

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from src.scaffolder.domain.models import ConversationState
from src.scaffolder.errors import NotFoundError, StorageError
from src.scaffolder.infrastructure import state_store_mongo
from src.scaffolder.infrastructure.state_store import (
    FileStateStore,
    InMemoryStateStore,
    ScaffolderRepository,
    get_state_store,
)


def test_memory_store_returns_copies():
    store = InMemoryStateStore()
    store.put("conversation", "c1", {"answers": {"a": 1}})
    rec = store.get("conversation", "c1")
    rec["answers"]["a"] = 2
    assert store.get("conversation", "c1") == {"answers": {"a": 1}}
    assert store.get("conversation", "missing") is None
    assert store.list_ids("conversation") == ["c1"]


def test_file_store_persists_between_instances(tmp_path):
    path = tmp_path / "state.json"
    FileStateStore(str(path)).put("app", "a1", {"name": "Tracker"})
    assert json.loads(path.read_text(encoding="utf-8")) == {"app": {"a1": {"name": "Tracker"}}}
    assert FileStateStore(str(path)).get("app", "a1") == {"name": "Tracker"}


def test_file_store_failed_write_leaves_memory_unchanged(tmp_path):
    path = tmp_path / "state.json"
    store = FileStateStore(str(path))
    store.put("app", "a1", {"name": "Tracker"})
    path.unlink()
    path.mkdir()
    with pytest.raises(StorageError):
        store.put("app", "a2", {"name": "Lost"})
    assert store.get("app", "a2") is None
    assert store.list_ids("app") == ["a1"]


def test_file_store_starts_clean_on_corrupt_file(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = FileStateStore(str(path))
    assert store.list_ids("app") == []


def test_repository_round_trip_and_not_found(repository):
    state = ConversationState(owner_id="u1")
    repository.save_conversation(state)
    loaded = repository.load_conversation(state.id)
    assert loaded.owner_id == "u1"
    assert repository.list_conversation_ids() == [state.id]
    with pytest.raises(NotFoundError) as exc:
        repository.load_app("app-missing")
    assert exc.value.status_code == 404


def test_repository_wraps_store_failures():
    class _Broken:
        def get(self, kind, record_id):
            raise OSError("disk gone")

        def put(self, kind, record_id, record):
            raise OSError("disk gone")

        def list_ids(self, kind):
            return []

    repo = ScaffolderRepository(_Broken())
    with pytest.raises(StorageError) as exc:
        repo.load_conversation("c1")
    assert exc.value.message == "Database operation failed: load conversation"
    with pytest.raises(StorageError):
        repo.save_conversation(ConversationState())


def test_store_factory_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("SCAFFOLDER_STORE_IMPL", raising=False)
    assert isinstance(get_state_store(), InMemoryStateStore)


class _FakeCollection:
    def __init__(self):
        self.docs = {}

    def find_one(self, query):
        return self.docs.get(query["_id"])

    def replace_one(self, query, doc, upsert=False):
        self.docs[query["_id"]] = {"_id": query["_id"], **doc}

    def find(self, query, projection=None):
        return [{"_id": k} for k in self.docs]


class _FakeDB:
    def __init__(self, collections):
        self._collections = collections

    def __getitem__(self, name):
        return self._collections.setdefault(name, _FakeCollection())


class _FakeClient:
    def __init__(self, url, serverSelectionTimeoutMS=None):
        self.url = url
        self.collections = {}

    def server_info(self):
        return {}

    def __getitem__(self, name):
        return _FakeDB(self.collections)


class _DownClient:
    def __init__(self, url, serverSelectionTimeoutMS=None):
        pass

    def server_info(self):
        raise ServerSelectionTimeoutError("no server")


def test_mongo_store_uses_collections(monkeypatch):
    monkeypatch.setattr(state_store_mongo, "MongoClient", _FakeClient)
    store = state_store_mongo.MongoStateStore(url="mongodb://fake", db_name="test")
    assert store.connected
    store.put("conversation", "c1", {"phase": "design"})
    assert store.get("conversation", "c1") == {"phase": "design"}
    assert store.get("conversation", "nope") is None
    assert store.list_ids("conversation") == ["c1"]
    assert "conversations" in store._client.collections


def test_mongo_store_falls_back_to_memory_when_down(monkeypatch):
    monkeypatch.setattr(state_store_mongo, "MongoClient", _DownClient)
    store = state_store_mongo.MongoStateStore(url="mongodb://down")
    assert not store.connected
    store.put("app", "a1", {"name": "x"})
    assert store.get("app", "a1") == {"name": "x"}
