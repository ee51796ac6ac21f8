"""
Document store access.

Handlers talk to a small collection/document API instead of the Firestore
client directly so the same code runs against Firestore in production and
against an in-process store locally and in tests. Transactions follow
Firestore's rules: every read happens before the first write, and the
callback may be re-run on contention.
"""
import copy
import json
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core.exceptions import AlreadyExists, NotFound

from .config import Settings
from .logger import get_logger

logger = get_logger("store")

T = TypeVar("T")


class DocumentNotFound(LookupError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class DocumentExists(ValueError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


# -------------------------------
# Time helpers
# -------------------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> Optional[datetime]:
    """Normalize Firestore timestamps, epoch numbers and ISO strings to aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if hasattr(value, "timestamp"):
        return datetime.fromtimestamp(float(value.timestamp()), tz=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _with_id(doc_id: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = dict(data or {})
    out["id"] = doc_id
    return out


def _strip_id(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != "id"}


def _matches(data: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(data.get(k) == v for k, v in filters.items())


def _order_and_limit(
    items: List[Dict[str, Any]],
    order_by: Optional[str],
    descending: bool,
    limit: Optional[int],
) -> List[Dict[str, Any]]:
    if order_by:
        def _key(d: Dict[str, Any]):
            v = d.get(order_by)
            if hasattr(v, "timestamp"):
                return to_datetime(v).timestamp()
            return v
        present = [d for d in items if d.get(order_by) is not None]
        missing = [d for d in items if d.get(order_by) is None]
        present.sort(key=_key, reverse=descending)
        items = present + missing
    if limit is not None:
        items = items[:limit]
    return items


# -------------------------------
# Interfaces
# -------------------------------
class Transaction:
    """Reads and buffered writes bound to one store transaction."""

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def increment(self, collection: str, doc_id: str, deltas: Dict[str, float]) -> None:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError


class DocumentStore:
    """Minimal document-store API used by the route handlers."""

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def increment(self, collection: str, doc_id: str, deltas: Dict[str, float]) -> None:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    def delete_expired(self, collection: str, field: str, now: datetime, limit: int = 50) -> int:
        """Delete up to `limit` documents whose `field` timestamp is at or before `now`."""
        raise NotImplementedError

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        raise NotImplementedError

    def collections(self) -> List[str]:
        raise NotImplementedError


# -------------------------------
# Firestore backend
# -------------------------------
def _load_firebase_credentials(settings: Settings) -> credentials.Certificate:
    json_str = settings.firebase_credentials_json
    if json_str:
        try:
            data = json.loads(json_str)
            return credentials.Certificate(data)
        except ValueError:
            # FIREBASE_CREDENTIALS_JSON may hold a path instead of JSON
            if os.path.exists(json_str):
                return credentials.Certificate(json_str)
            raise
    path = settings.firebase_credentials_path
    if not os.path.exists(path):
        raise RuntimeError(
            "Firebase credentials not found. Provide FIREBASE_CREDENTIALS_JSON (JSON or path) "
            "or place credentials.json in the app directory."
        )
    return credentials.Certificate(path)


def init_firebase(settings: Settings) -> None:
    if not firebase_admin._apps:
        firebase_admin.initialize_app(_load_firebase_credentials(settings))


class _FirestoreTransaction(Transaction):
    def __init__(self, client, transaction: firestore.Transaction):
        self._db = client
        self._txn = transaction

    def _ref(self, collection: str, doc_id: str):
        return self._db.collection(collection).document(str(doc_id))

    def get(self, collection, doc_id):
        snap = self._ref(collection, doc_id).get(transaction=self._txn)
        if not snap.exists:
            return None
        return _with_id(snap.id, snap.to_dict())

    def set(self, collection, doc_id, data):
        self._txn.set(self._ref(collection, doc_id), _strip_id(data))

    def create(self, collection, data, doc_id=None):
        if doc_id is None:
            ref = self._db.collection(collection).document()
        else:
            ref = self._ref(collection, doc_id)
        self._txn.create(ref, _strip_id(data))
        return ref.id

    def update(self, collection, doc_id, fields):
        self._txn.update(self._ref(collection, doc_id), fields)

    def increment(self, collection, doc_id, deltas):
        self._txn.update(
            self._ref(collection, doc_id),
            {k: firestore.Increment(v) for k, v in deltas.items()},
        )

    def delete(self, collection, doc_id):
        self._txn.delete(self._ref(collection, doc_id))


class FirestoreStore(DocumentStore):
    def __init__(self, client=None):
        self.db = client or firestore.client()

    def _ref(self, collection: str, doc_id: str):
        return self.db.collection(collection).document(str(doc_id))

    def get(self, collection, doc_id):
        snap = self._ref(collection, doc_id).get()
        if not snap.exists:
            return None
        return _with_id(snap.id, snap.to_dict())

    def create(self, collection, data, doc_id=None):
        if doc_id is None:
            ref = self.db.collection(collection).document()
        else:
            ref = self._ref(collection, doc_id)
        try:
            ref.create(_strip_id(data))
        except AlreadyExists:
            raise DocumentExists(collection, ref.id)
        return ref.id

    def set(self, collection, doc_id, data, merge=False):
        self._ref(collection, doc_id).set(_strip_id(data), merge=merge)

    def update(self, collection, doc_id, fields):
        try:
            self._ref(collection, doc_id).update(fields)
        except NotFound:
            raise DocumentNotFound(collection, doc_id)

    def increment(self, collection, doc_id, deltas):
        self.update(collection, doc_id, {k: firestore.Increment(v) for k, v in deltas.items()})

    def delete(self, collection, doc_id):
        self._ref(collection, doc_id).delete()

    def delete_expired(self, collection, field, now, limit=50):
        expired = self.db.collection(collection).where(field, "<=", now).limit(limit).stream()
        removed = 0
        for d in expired:
            d.reference.delete()
            removed += 1
        return removed

    def query(self, collection, filters=None, order_by=None, descending=False, limit=None):
        # Only a single equality filter goes to Firestore so no composite index is needed;
        # the remaining filters, ordering and limit are applied in Python.
        ref = self.db.collection(collection)
        if filters:
            (k, v), *_ = filters.items()
            docs: Iterable = ref.where(k, "==", v).stream()
        else:
            docs = ref.stream()
        items = []
        for d in docs:
            data = d.to_dict()
            if not isinstance(data, dict) or not _matches(data, filters):
                continue
            items.append(_with_id(d.id, data))
        return _order_and_limit(items, order_by, descending, limit)

    def run_transaction(self, fn):
        @firestore.transactional
        def _run(transaction: firestore.Transaction):
            return fn(_FirestoreTransaction(self.db, transaction))
        return _run(self.db.transaction())

    def collections(self):
        return [c.id for c in self.db.collections()]


# -------------------------------
# In-process backend
# -------------------------------
def _new_id() -> str:
    return uuid.uuid4().hex[:20]


class _MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._writes: List[Callable[[], None]] = []

    def get(self, collection, doc_id):
        return self._store.get(collection, doc_id)

    def set(self, collection, doc_id, data):
        self._writes.append(lambda: self._store.set(collection, doc_id, data))

    def create(self, collection, data, doc_id=None):
        doc_id = doc_id or _new_id()
        self._writes.append(lambda: self._store.create(collection, data, doc_id))
        return doc_id

    def update(self, collection, doc_id, fields):
        self._writes.append(lambda: self._store.update(collection, doc_id, fields))

    def increment(self, collection, doc_id, deltas):
        self._writes.append(lambda: self._store.increment(collection, doc_id, deltas))

    def delete(self, collection, doc_id):
        self._writes.append(lambda: self._store.delete(collection, doc_id))

    def commit(self) -> None:
        for write in self._writes:
            write()


class MemoryStore(DocumentStore):
    """Thread-safe in-process store; transactions are serialized on one lock."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def get(self, collection, doc_id):
        with self._lock:
            data = self._data.get(collection, {}).get(str(doc_id))
            if data is None:
                return None
            return _with_id(str(doc_id), copy.deepcopy(data))

    def create(self, collection, data, doc_id=None):
        with self._lock:
            docs = self._data.setdefault(collection, {})
            doc_id = str(doc_id or _new_id())
            if doc_id in docs:
                raise DocumentExists(collection, doc_id)
            docs[doc_id] = copy.deepcopy(_strip_id(data))
            return doc_id

    def set(self, collection, doc_id, data, merge=False):
        with self._lock:
            docs = self._data.setdefault(collection, {})
            payload = copy.deepcopy(_strip_id(data))
            if merge and str(doc_id) in docs:
                docs[str(doc_id)].update(payload)
            else:
                docs[str(doc_id)] = payload

    def update(self, collection, doc_id, fields):
        with self._lock:
            doc = self._data.get(collection, {}).get(str(doc_id))
            if doc is None:
                raise DocumentNotFound(collection, str(doc_id))
            doc.update(copy.deepcopy(fields))

    def increment(self, collection, doc_id, deltas):
        with self._lock:
            doc = self._data.get(collection, {}).get(str(doc_id))
            if doc is None:
                raise DocumentNotFound(collection, str(doc_id))
            for k, v in deltas.items():
                doc[k] = (doc.get(k) or 0) + v

    def delete(self, collection, doc_id):
        with self._lock:
            self._data.get(collection, {}).pop(str(doc_id), None)

    def delete_expired(self, collection, field, now, limit=50):
        with self._lock:
            docs = self._data.get(collection, {})
            expired = [
                doc_id for doc_id, data in docs.items()
                if to_datetime(data.get(field)) is not None and to_datetime(data.get(field)) <= now
            ][:limit]
            for doc_id in expired:
                docs.pop(doc_id)
            return len(expired)

    def query(self, collection, filters=None, order_by=None, descending=False, limit=None):
        with self._lock:
            items = [
                _with_id(doc_id, copy.deepcopy(data))
                for doc_id, data in self._data.get(collection, {}).items()
                if _matches(data, filters)
            ]
        return _order_and_limit(items, order_by, descending, limit)

    def run_transaction(self, fn):
        with self._lock:
            txn = _MemoryTransaction(self)
            result = fn(txn)
            snapshot = copy.deepcopy(self._data)
            try:
                txn.commit()
            except Exception:
                self._data = snapshot
                raise
            return result

    def collections(self):
        with self._lock:
            return sorted(self._data.keys())


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        logger.warning("Using in-memory document store; data is not persisted")
        return MemoryStore()
    init_firebase(settings)
    return FirestoreStore()
