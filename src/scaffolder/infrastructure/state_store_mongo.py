from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..errors import StorageError

logger = logging.getLogger("scaffolder.store")

_SHARED_FALLBACK_STORE = None


class MongoStateStore:
    """MongoDB-backed record store: one collection per record kind.

    When the server is unreachable at start-up the store degrades to the shared
    in-memory store so a dev instance still boots; failures after a successful
    connection are raised as ``StorageError``.
    """

    def __init__(self, url: Optional[str] = None, db_name: Optional[str] = None) -> None:
        self._url = url or os.getenv("MONGO_URL", "mongodb://localhost:27017")
        self._db_name = db_name or os.getenv("MONGO_DB", "scaffolder")
        self._client: Optional[MongoClient] = None
        self._fallback = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = MongoClient(self._url, serverSelectionTimeoutMS=500)
            self._client.server_info()
        except PyMongoError as exc:
            logger.warning("mongo_unavailable_using_memory", extra={"err": str(exc)})
            self._client = None

    def _collection(self, kind: str) -> Collection:
        assert self._client is not None
        col = self._client[self._db_name][f"{kind}s"]
        return col

    def _fallback_store(self):
        global _SHARED_FALLBACK_STORE
        if _SHARED_FALLBACK_STORE is None:
            from .state_store import InMemoryStateStore

            _SHARED_FALLBACK_STORE = InMemoryStateStore()
        if self._fallback is None:
            self._fallback = _SHARED_FALLBACK_STORE
        return self._fallback

    @property
    def connected(self) -> bool:
        return self._client is not None

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        if self._client is None:
            return self._fallback_store().get(kind, record_id)
        try:
            doc = self._collection(kind).find_one({"_id": record_id})
        except PyMongoError as exc:
            raise StorageError(f"get {kind}", original=exc) from exc
        if not doc:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return doc

    def put(self, kind: str, record_id: str, record: Dict[str, Any]) -> None:
        if self._client is None:
            self._fallback_store().put(kind, record_id, record)
            return
        try:
            self._collection(kind).replace_one({"_id": record_id}, dict(record), upsert=True)
        except PyMongoError as exc:
            raise StorageError(f"put {kind}", original=exc) from exc

    def list_ids(self, kind: str) -> List[str]:
        if self._client is None:
            return self._fallback_store().list_ids(kind)
        try:
            return [str(doc["_id"]) for doc in self._collection(kind).find({}, {"_id": 1})]
        except PyMongoError as exc:
            raise StorageError(f"list {kind}", original=exc) from exc
