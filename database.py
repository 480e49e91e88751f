"""
Database Helper Functions

Document store used by every MILK endpoint. Two interchangeable backends
implement the same helpers:

- MongoStore: a MongoDB database (DATABASE_URL + DATABASE_NAME)
- JsonFileStore: the whole state kept in memory and rewritten to one
  pretty-printed JSON file (DB_FILE) on every mutation

Handlers only talk to the DocumentStore interface, obtained through the
get_store() dependency.
"""

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Union, Optional, Dict, Any, List, Sequence, Tuple

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_COLLECTIONS = ("users", "rewards", "orders", "prepaid", "pointsOps")

# collections the MILK apps keep newest first in the state file
PREPEND_COLLECTIONS = frozenset({"pointsOps", "orders", "prepaid", "reservations", "happy"})

SortSpec = Sequence[Tuple[str, int]]


class StoreError(Exception):
    """Raised when a document cannot be persisted or read back."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(ObjectId())


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    return dict(data)


class DocumentStore(ABC):
    """Interface shared by the store backends.

    Filters are plain equality matches on top-level fields. Sort specs are
    lists of (field, direction) pairs, direction -1 meaning descending.
    """

    kind = "abstract"

    @abstractmethod
    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> dict:
        ...

    @abstractmethod
    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None,
                      sort: Optional[SortSpec] = None, limit: Optional[int] = None) -> List[dict]:
        ...

    @abstractmethod
    def get_document_by_id(self, collection_name: str, _id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def update_document(self, collection_name: str, _id: str, update_data: Union[BaseModel, dict]) -> Optional[dict]:
        ...

    @abstractmethod
    def delete_document(self, collection_name: str, _id: str) -> bool:
        ...

    def count_documents(self, collection_name: str, filter_dict: Optional[dict] = None) -> int:
        return len(self.get_documents(collection_name, filter_dict))

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        ...


def _prepare(data: Union[BaseModel, dict]) -> dict:
    payload = _to_dict(data)
    if not payload.get("id"):
        payload["id"] = new_id()
    payload.setdefault("createdAt", now_iso())
    return payload


# ===================== JSON file backend =====================

def _matches(doc: dict, filter_dict: Optional[dict]) -> bool:
    return all(doc.get(k) == v for k, v in (filter_dict or {}).items())


def _sort_key(field: str):
    def key(doc: dict):
        value = doc.get(field)
        return (value is not None, value)
    return key


def _sort_documents(docs: List[dict], sort: SortSpec) -> List[dict]:
    """Stable sort of docs given in insertion order; ties under a descending
    primary key come out newest first."""
    ordered = list(docs)
    if sort[0][1] < 0:
        ordered.reverse()
    for field, direction in reversed(list(sort)):
        ordered.sort(key=_sort_key(field), reverse=direction < 0)
    return ordered


class JsonFileStore(DocumentStore):
    kind = "json"

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self._state: Dict[str, List[dict]] = {name: [] for name in DEFAULT_COLLECTIONS}
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            logger.info("No state file at %s, creating an empty one", self.path)
            self._save()
            return
        try:
            with open(self.path, encoding="utf-8") as fh:
                parsed = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s, starting with an empty database: %s", self.path, e)
            return
        if not isinstance(parsed, dict):
            logger.warning("State file %s is not a JSON object, starting with an empty database", self.path)
            return
        self._state.update({k: v for k, v in parsed.items() if isinstance(v, list)})
        logger.info("Loaded %s", self.path)

    def _save(self) -> None:
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(self._state, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Could not write {self.path}: {e}") from e

    def _collection(self, collection_name: str) -> List[dict]:
        return self._state.setdefault(collection_name, [])

    def _find(self, collection_name: str, _id: str) -> Optional[dict]:
        for doc in self._collection(collection_name):
            if doc.get("id") == _id:
                return doc
        return None

    def _commit(self, collection_name: str, previous: List[dict]) -> None:
        """Write the state; on failure put the collection back as it was."""
        try:
            self._save()
        except StoreError:
            self._state[collection_name] = previous
            raise

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> dict:
        payload = _prepare(data)
        with self._lock:
            docs = self._collection(collection_name)
            previous = copy.deepcopy(docs)
            if collection_name in PREPEND_COLLECTIONS:
                docs.insert(0, payload)
            else:
                docs.append(payload)
            self._commit(collection_name, previous)
            return copy.deepcopy(payload)

    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None,
                      sort: Optional[SortSpec] = None, limit: Optional[int] = None) -> List[dict]:
        with self._lock:
            docs = [d for d in self._collection(collection_name) if _matches(d, filter_dict)]
            if sort:
                if collection_name in PREPEND_COLLECTIONS:
                    docs.reverse()
                docs = _sort_documents(docs, sort)
            if limit:
                docs = docs[:int(limit)]
            return copy.deepcopy(docs)

    def get_document_by_id(self, collection_name: str, _id: str) -> Optional[dict]:
        with self._lock:
            doc = self._find(collection_name, _id)
            return copy.deepcopy(doc) if doc else None

    def update_document(self, collection_name: str, _id: str, update_data: Union[BaseModel, dict]) -> Optional[dict]:
        with self._lock:
            doc = self._find(collection_name, _id)
            if doc is None:
                return None
            previous = copy.deepcopy(self._collection(collection_name))
            doc.update(copy.deepcopy(_to_dict(update_data)))
            self._commit(collection_name, previous)
            return copy.deepcopy(doc)

    def delete_document(self, collection_name: str, _id: str) -> bool:
        with self._lock:
            docs = self._collection(collection_name)
            for idx, doc in enumerate(docs):
                if doc.get("id") == _id:
                    previous = copy.deepcopy(docs)
                    del docs[idx]
                    self._commit(collection_name, previous)
                    return True
            return False

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            return {"backend": self.kind, "path": self.path, "collections": sorted(self._state)}


# ===================== MongoDB backend =====================

class MongoStore(DocumentStore):
    kind = "mongo"

    def __init__(self, db):
        self.db = db

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> dict:
        payload = _prepare(data)
        try:
            self.db[collection_name].insert_one(dict(payload))
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return payload

    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None,
                      sort: Optional[SortSpec] = None, limit: Optional[int] = None) -> List[dict]:
        try:
            cursor = self.db[collection_name].find(filter_dict or {})
            if sort:
                tie_break = -1 if sort[0][1] < 0 else 1
                cursor = cursor.sort(list(sort) + [("_id", tie_break)])
            if limit:
                cursor = cursor.limit(int(limit))
            return [serialize_doc(doc) for doc in cursor]
        except PyMongoError as e:
            raise StoreError(str(e)) from e

    def get_document_by_id(self, collection_name: str, _id: str) -> Optional[dict]:
        try:
            doc = self.db[collection_name].find_one({"id": _id})
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return serialize_doc(doc)

    def update_document(self, collection_name: str, _id: str, update_data: Union[BaseModel, dict]) -> Optional[dict]:
        try:
            doc = self.db[collection_name].find_one_and_update(
                {"id": _id},
                {"$set": _to_dict(update_data)},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return serialize_doc(doc)

    def delete_document(self, collection_name: str, _id: str) -> bool:
        try:
            result = self.db[collection_name].delete_one({"id": _id})
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return result.deleted_count > 0

    def count_documents(self, collection_name: str, filter_dict: Optional[dict] = None) -> int:
        try:
            return self.db[collection_name].count_documents(filter_dict or {})
        except PyMongoError as e:
            raise StoreError(str(e)) from e

    def describe(self) -> Dict[str, Any]:
        try:
            collections = sorted(self.db.list_collection_names())
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return {"backend": self.kind, "database": self.db.name, "collections": collections}


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    d.pop("_id", None)  # documents are addressed by their own "id"
    return d


# ===================== Store selection =====================

_store: Optional[DocumentStore] = None


def store_from_env() -> DocumentStore:
    database_url = os.getenv("DATABASE_URL")
    database_name = os.getenv("DATABASE_NAME")
    if database_url and database_name:
        logger.info("Using MongoDB database %s", database_name)
        return MongoStore(MongoClient(database_url)[database_name])
    path = os.getenv("DB_FILE", "db-milk.json")
    logger.info("Using JSON file store %s", path)
    return JsonFileStore(path)


def get_store() -> DocumentStore:
    global _store
    if _store is None:
        _store = store_from_env()
    return _store
