from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol

from ..domain.models import ConversationState, GeneratedAppRecord, utc_now_iso
from ..errors import NotFoundError, StorageError

logger = logging.getLogger("scaffolder.store")

Record = Dict[str, Any]

KIND_CONVERSATION = "conversation"
KIND_APP = "app"


class StateStore(Protocol):
    def get(self, kind: str, record_id: str) -> Optional[Record]: ...
    def put(self, kind: str, record_id: str, record: Record) -> None: ...
    def list_ids(self, kind: str) -> List[str]: ...


class InMemoryStateStore:
    """Keyed record store held in process memory. Default for dev and tests."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._records: Dict[str, Dict[str, Record]] = {}

    def get(self, kind: str, record_id: str) -> Optional[Record]:
        with self._lock:
            rec = self._records.get(kind, {}).get(record_id)
            return json.loads(json.dumps(rec)) if rec is not None else None

    def put(self, kind: str, record_id: str, record: Record) -> None:
        # last write wins
        with self._lock:
            self._records.setdefault(kind, {})[record_id] = json.loads(json.dumps(record, default=str))

    def list_ids(self, kind: str) -> List[str]:
        with self._lock:
            return list(self._records.get(kind, {}).keys())


class FileStateStore:
    """JSON file-backed store for development persistence.

    Structure: ``{kind: {id: record}}`` in a single file, guarded by a coarse RLock.
    Unlike a best-effort cache, write failures are raised as ``StorageError``.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        self._lock = RLock()
        root = Path(__file__).resolve().parents[3]
        default_path = root / "run" / "scaffolder_state.json"
        self._path = Path(file_path or os.getenv("SCAFFOLDER_STORE_FILE", str(default_path)))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._records: Dict[str, Dict[str, Record]] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            # unreadable file: start clean rather than refusing to boot
            logger.warning("state_file_unreadable", extra={"path": str(self._path), "err": str(exc)})
            return
        if isinstance(data, dict):
            self._records = {k: dict(v) for k, v in data.items() if isinstance(v, dict)}

    def _save(self, records: Dict[str, Dict[str, Record]]) -> None:
        try:
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(records, indent=2, default=str), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            raise StorageError("save", original=exc) from exc

    def get(self, kind: str, record_id: str) -> Optional[Record]:
        with self._lock:
            rec = self._records.get(kind, {}).get(record_id)
            return json.loads(json.dumps(rec)) if rec is not None else None

    def put(self, kind: str, record_id: str, record: Record) -> None:
        with self._lock:
            # memory only changes once the file write succeeded
            updated = dict(self._records)
            updated[kind] = {**self._records.get(kind, {}), record_id: json.loads(json.dumps(record, default=str))}
            self._save(updated)
            self._records = updated

    def list_ids(self, kind: str) -> List[str]:
        with self._lock:
            return list(self._records.get(kind, {}).keys())


class ScaffolderRepository:
    """Typed load/save of conversations and apps on top of a keyed record store."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    @property
    def store(self) -> StateStore:
        return self._store

    def _get(self, kind: str, record_id: str) -> Optional[Record]:
        try:
            return self._store.get(kind, record_id)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"load {kind}", original=exc) from exc

    def _put(self, kind: str, record_id: str, record: Record) -> None:
        try:
            self._store.put(kind, record_id, record)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"save {kind}", original=exc) from exc

    def load_conversation(self, conversation_id: str) -> ConversationState:
        rec = self._get(KIND_CONVERSATION, conversation_id)
        if rec is None:
            raise NotFoundError("Conversation", conversation_id)
        return ConversationState.model_validate(rec)

    def save_conversation(self, state: ConversationState) -> ConversationState:
        state.updated_at = utc_now_iso()
        self._put(KIND_CONVERSATION, state.id, state.model_dump(mode="json"))
        return state

    def load_app(self, app_id: str) -> GeneratedAppRecord:
        rec = self._get(KIND_APP, app_id)
        if rec is None:
            raise NotFoundError("App", app_id)
        return GeneratedAppRecord.model_validate(rec)

    def save_app(self, app: GeneratedAppRecord) -> GeneratedAppRecord:
        app.updated_at = utc_now_iso()
        self._put(KIND_APP, app.id, app.model_dump(mode="json"))
        return app

    def list_conversation_ids(self) -> List[str]:
        return self._store.list_ids(KIND_CONVERSATION)


_memory_store: StateStore = InMemoryStateStore()
_file_store: Optional[StateStore] = None
_mongo_store: Optional[StateStore] = None


def get_state_store() -> StateStore:
    global _file_store
    global _mongo_store
    impl = os.getenv("SCAFFOLDER_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        if _mongo_store is None:
            from .state_store_mongo import MongoStateStore

            _mongo_store = MongoStateStore()
        return _mongo_store
    if impl == "file":
        if _file_store is None:
            _file_store = FileStateStore()
        return _file_store
    return _memory_store
