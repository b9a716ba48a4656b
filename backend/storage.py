import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from bson import json_util
from flask import Flask
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value) -> Optional[datetime]:
    """MongoDB hands back naive UTC datetimes; everything else here is aware."""
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DuplicateRecordError(Exception):
    """An insert collided with an existing key or unique field."""


class DocumentStore(ABC):
    """Key-value view over one collection of documents.

    Every document carries its key under ``key_field``. ``unique_fields``
    are enforced on ``insert`` only; ``put`` is an unconditional upsert.
    """

    def __init__(self, key_field: str, unique_fields: Iterable[str] = ()):
        self.key_field = key_field
        self.unique_fields = tuple(unique_fields)

    @abstractmethod
    def get(self, key: str) -> Optional[Dict]:
        ...

    @abstractmethod
    def find_one(self, field: str, value) -> Optional[Dict]:
        ...

    @abstractmethod
    def put(self, document: Dict) -> None:
        ...

    @abstractmethod
    def insert(self, document: Dict) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...


class MongoDocumentStore(DocumentStore):
    def __init__(
        self,
        collection,
        key_field: str,
        unique_fields: Iterable[str] = (),
        ttl_field: Optional[str] = None,
    ):
        super().__init__(key_field, unique_fields)
        self.collection = collection

        try:
            collection.create_index(key_field, unique=True)
            for field in self.unique_fields:
                collection.create_index(field, unique=True)
            if ttl_field:
                collection.create_index(ttl_field, expireAfterSeconds=0)
        except Exception as exc:
            logger.warning(
                "Unable to ensure indexes for %s: %s", collection.name, exc
            )

    @staticmethod
    def _strip(document):
        if not document:
            return None
        document.pop("_id", None)
        return document

    def get(self, key):
        return self._strip(self.collection.find_one({self.key_field: key}))

    def find_one(self, field, value):
        return self._strip(self.collection.find_one({field: value}))

    def put(self, document):
        self.collection.replace_one(
            {self.key_field: document[self.key_field]}, dict(document), upsert=True
        )

    def insert(self, document):
        try:
            self.collection.insert_one(dict(document))
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(str(exc)) from exc

    def delete(self, key):
        result = self.collection.delete_one({self.key_field: key})
        return result.deleted_count > 0


class JsonFileDocumentStore(DocumentStore):
    """All documents of a collection in one JSON object keyed by document key.

    Datetimes are written as extended JSON so they load back as datetimes.
    """

    def __init__(self, path: str, key_field: str, unique_fields: Iterable[str] = ()):
        super().__init__(key_field, unique_fields)
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Dict]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                content = handle.read()
        except FileNotFoundError:
            return {}
        if not content.strip():
            return {}
        return json_util.loads(content)

    def _write(self, documents: Dict[str, Dict]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        temp_path = f"{self.path}.tmp"
        with open(temp_path, "w", encoding="utf-8") as handle:
            handle.write(json_util.dumps(documents, indent=2))
        os.replace(temp_path, self.path)

    def get(self, key):
        with self._lock:
            document = self._read().get(str(key))
        return dict(document) if document else None

    def find_one(self, field, value):
        with self._lock:
            documents = self._read()
        for document in documents.values():
            if document.get(field) == value:
                return dict(document)
        return None

    def put(self, document):
        key = str(document[self.key_field])
        with self._lock:
            documents = self._read()
            documents[key] = dict(document)
            self._write(documents)

    def insert(self, document):
        key = str(document[self.key_field])
        with self._lock:
            documents = self._read()
            if key in documents:
                raise DuplicateRecordError(f"{self.key_field} {key!r} already exists")
            for field in self.unique_fields:
                value = document.get(field)
                if any(existing.get(field) == value for existing in documents.values()):
                    raise DuplicateRecordError(f"{field} {value!r} already exists")
            documents[key] = dict(document)
            self._write(documents)

    def delete(self, key):
        with self._lock:
            documents = self._read()
            if documents.pop(str(key), None) is None:
                return False
            self._write(documents)
        return True


class Storage:
    def __init__(
        self,
        users: DocumentStore,
        otps: DocumentStore,
        sessions: DocumentStore,
        orders: DocumentStore,
    ):
        self.users = users
        self.otps = otps
        self.sessions = sessions
        self.orders = orders


def build_storage(app: Flask) -> Storage:
    backend = str(app.config.get("STORAGE_BACKEND") or "file").strip().lower()

    if backend == "mongo":
        mongo = PyMongo(app)
        db = mongo.db
        if db is None:
            raise RuntimeError("MONGO_URI must name a database, e.g. mongodb://host/heime")
        return Storage(
            users=MongoDocumentStore(db.users, "email", unique_fields=("username_lower",)),
            otps=MongoDocumentStore(db.otps, "email", ttl_field="expires_at"),
            sessions=MongoDocumentStore(db.sessions, "sid", ttl_field="expires_at"),
            orders=MongoDocumentStore(db.orders, "order_number"),
        )

    if backend == "file":
        data_dir = app.config["DATA_DIR"]
        return Storage(
            users=JsonFileDocumentStore(
                os.path.join(data_dir, "users.json"),
                "email",
                unique_fields=("username_lower",),
            ),
            otps=JsonFileDocumentStore(os.path.join(data_dir, "otp.json"), "email"),
            sessions=JsonFileDocumentStore(os.path.join(data_dir, "sessions.json"), "sid"),
            orders=JsonFileDocumentStore(os.path.join(data_dir, "orders.json"), "order_number"),
        )

    raise ValueError(f"Unsupported storage backend: {backend!r}")
