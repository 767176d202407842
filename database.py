"""
Document store with fallback

Primary: MongoDB via environment variables DATABASE_URL and DATABASE_NAME
Fallback: Mongita (embedded, file-based MongoDB-compatible client) when env vars
          are not provided. This enables the app to run without external DB.

The rest of the application only talks to DocumentStore, a narrow
get/set/update/delete + transaction + batch interface keyed by
(collection, key). Update values may be field transforms (Increment,
ArrayUnion, ArrayRemove) and dotted paths address nested fields.

On MongoDB, transforms become $inc / $addToSet / $pull and transactions run
inside a client session (requires a replica set). Mongita has neither
sessions nor those operators, so transforms are applied in Python,
transactions serialize on a store-wide lock, and a failed commit restores
the documents it touched from pre-images.
"""

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from bson import ObjectId
from pymongo import DeleteOne, MongoClient, UpdateOne

from config import Settings
from errors import not_found

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------- Field transforms ----------

class Increment:
    """Add ``amount`` to a numeric field (missing counts as 0)."""

    __slots__ = ("amount",)

    def __init__(self, amount):
        self.amount = amount

    def __repr__(self):
        return f"Increment({self.amount!r})"


class ArrayUnion:
    """Append each value that is not already present."""

    __slots__ = ("values",)

    def __init__(self, *values):
        self.values = list(values)

    def __repr__(self):
        return f"ArrayUnion({self.values!r})"


class ArrayRemove:
    """Remove every occurrence of each value; absent values are a no-op."""

    __slots__ = ("values",)

    def __init__(self, *values):
        self.values = list(values)

    def __repr__(self):
        return f"ArrayRemove({self.values!r})"


def _walk(doc: dict, path: str) -> Tuple[dict, str]:
    *parents, leaf = path.split(".")
    node = doc
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    return node, leaf


def apply_changes(doc: dict, changes: Dict[str, Any]) -> dict:
    """Apply an update mapping to ``doc`` in place and return it."""
    for path, value in changes.items():
        parent, leaf = _walk(doc, path)
        current = parent.get(leaf)
        if isinstance(value, Increment):
            parent[leaf] = (current or 0) + value.amount
        elif isinstance(value, ArrayUnion):
            items = list(current or [])
            for item in value.values:
                if item not in items:
                    items.append(item)
            parent[leaf] = items
        elif isinstance(value, ArrayRemove):
            parent[leaf] = [item for item in (current or []) if item not in value.values]
        else:
            parent[leaf] = value
    return doc


def to_mongo_update(changes: Dict[str, Any]) -> Dict[str, dict]:
    """Translate an update mapping into MongoDB update operators."""
    update: Dict[str, dict] = {}
    for path, value in changes.items():
        if isinstance(value, Increment):
            update.setdefault("$inc", {})[path] = value.amount
        elif isinstance(value, ArrayUnion):
            update.setdefault("$addToSet", {})[path] = {"$each": value.values}
        elif isinstance(value, ArrayRemove):
            update.setdefault("$pull", {})[path] = {"$in": value.values}
        else:
            update.setdefault("$set", {})[path] = value
    return update


def _strip(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    return {k: v for k, v in doc.items() if k != "_id"}


# ---------- Transactions and batches ----------

class Transaction:
    """Read-then-write unit handed to ``DocumentStore.run_transaction``.

    Reads observe the state before the transaction; writes are staged and
    only reach the database when the transaction function returns.
    """

    def __init__(self, store: "DocumentStore", session=None):
        self._store = store
        self._session = session
        self._writes: List[Tuple[str, str, str, Any]] = []

    def get(self, collection: str, key: str) -> Optional[dict]:
        return self._store._find(collection, key, self._session)

    def get_all(self, *refs: Tuple[str, str]) -> List[Optional[dict]]:
        return [self.get(collection, key) for collection, key in refs]

    def set(self, collection: str, key: str, data: dict) -> None:
        self._writes.append(("set", collection, key, dict(data)))

    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> None:
        self._writes.append(("update", collection, key, dict(changes)))

    def delete(self, collection: str, key: str) -> None:
        self._writes.append(("delete", collection, key, None))

    def _check_targets(self) -> None:
        # An update needs its document to exist once earlier staged writes apply.
        exists: Dict[Tuple[str, str], bool] = {}
        for op, collection, key, _ in self._writes:
            ref = (collection, key)
            if op == "set":
                exists[ref] = True
            elif op == "delete":
                exists[ref] = False
            else:
                if ref not in exists:
                    exists[ref] = self._store._find(collection, key, self._session) is not None
                if not exists[ref]:
                    raise not_found(f"Document {collection}/{key} not found")

    def _commit(self) -> None:
        self._check_targets()
        if self._session is not None:
            self._apply()
            return

        # No session to abort: keep pre-images and put them back on failure.
        before: Dict[Tuple[str, str], Optional[dict]] = {}
        for _, collection, key, _ in self._writes:
            if (collection, key) not in before:
                before[(collection, key)] = copy.deepcopy(self._store._find(collection, key))
        try:
            self._apply()
        except Exception:
            logger.warning("Transaction commit failed, restoring %d document(s)", len(before))
            for (collection, key), doc in before.items():
                if doc is None:
                    self._store._remove(collection, key)
                else:
                    self._store._replace(collection, key, doc)
            raise

    def _apply(self) -> None:
        for op, collection, key, payload in self._writes:
            if op == "set":
                self._store._replace(collection, key, payload, self._session)
            elif op == "update":
                self._store._update(collection, key, payload, self._session)
            else:
                self._store._remove(collection, key, self._session)


class WriteBatch:
    """Non-atomic, ordered group of writes.

    Updates of missing documents are no-ops. A failing write stops the batch,
    so later writes (e.g. a trailing delete) are not applied.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[Tuple[str, str, str, Any]] = []

    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> None:
        self._ops.append(("update", collection, key, dict(changes)))

    def delete(self, collection: str, key: str) -> None:
        self._ops.append(("delete", collection, key, None))

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> None:
        if self._ops:
            self._store._commit_batch(self._ops)
        self._ops = []


# ---------- Store ----------

class DocumentStore:
    def __init__(self, db, client=None):
        self.db = db
        self.client = client
        self.supports_sessions = isinstance(client, MongoClient)
        self._lock = threading.RLock()

    # -- single-document operations --

    def get(self, collection: str, key: str) -> Optional[dict]:
        if self.supports_sessions:
            return self._find(collection, key)
        with self._lock:
            return self._find(collection, key)

    def set(self, collection: str, key: str, data: dict) -> None:
        with self._lock:
            self._replace(collection, key, dict(data))

    def add(self, collection: str, data: dict) -> str:
        """Insert ``data`` under a new store-assigned key and return the key."""
        key = str(ObjectId())
        self.set(collection, key, data)
        return key

    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> None:
        with self._lock:
            if not self._update(collection, key, changes):
                raise not_found(f"Document {collection}/{key} not found")

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._remove(collection, key)

    def list(self, collection: str) -> List[Tuple[str, dict]]:
        if self.supports_sessions:
            return [(str(doc["_id"]), _strip(doc)) for doc in self.db[collection].find({})]
        with self._lock:
            return [(str(doc["_id"]), _strip(doc)) for doc in self.db[collection].find({})]

    def query_array_contains(self, collection: str, field: str, value: Any) -> List[Tuple[str, dict]]:
        if self.supports_sessions:
            cursor = self.db[collection].find({field: value})
            return [(str(doc["_id"]), _strip(doc)) for doc in cursor]
        return [
            (key, doc)
            for key, doc in self.list(collection)
            if value in (doc.get(field) or [])
        ]

    # -- multi-document operations --

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` atomically; an exception discards every staged write."""
        if self.supports_sessions:
            with self.client.start_session() as session:
                return session.with_transaction(lambda s: self._execute(fn, s))
        with self._lock:
            return self._execute(fn, None)

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def _execute(self, fn: Callable[[Transaction], T], session) -> T:
        txn = Transaction(self, session)
        result = fn(txn)
        txn._commit()
        return result

    def _commit_batch(self, ops: List[Tuple[str, str, str, Any]]) -> None:
        if self.supports_sessions:
            # bulk_write is per collection; keep overall order by grouping runs.
            run_collection, requests = None, []
            for op, collection, key, payload in ops:
                if collection != run_collection and requests:
                    self.db[run_collection].bulk_write(requests, ordered=True)
                    requests = []
                run_collection = collection
                if op == "update":
                    requests.append(UpdateOne({"_id": key}, to_mongo_update(payload)))
                else:
                    requests.append(DeleteOne({"_id": key}))
            if requests:
                self.db[run_collection].bulk_write(requests, ordered=True)
            return
        for op, collection, key, payload in ops:
            with self._lock:
                if op == "update":
                    self._update(collection, key, payload)
                else:
                    self._remove(collection, key)

    # -- backend primitives --

    def _find(self, collection: str, key: str, session=None) -> Optional[dict]:
        if self.supports_sessions:
            return _strip(self.db[collection].find_one({"_id": key}, session=session))
        return _strip(self.db[collection].find_one({"_id": key}))

    def _replace(self, collection: str, key: str, data: dict, session=None) -> None:
        data.pop("_id", None)
        if self.supports_sessions:
            self.db[collection].replace_one({"_id": key}, data, upsert=True, session=session)
            return
        coll = self.db[collection]
        if coll.find_one({"_id": key}) is None:
            coll.insert_one({"_id": key, **data})
        else:
            coll.replace_one({"_id": key}, data)

    def _update(self, collection: str, key: str, changes: Dict[str, Any], session=None) -> bool:
        if self.supports_sessions:
            result = self.db[collection].update_one(
                {"_id": key}, to_mongo_update(changes), session=session
            )
            return result.matched_count > 0
        coll = self.db[collection]
        doc = coll.find_one({"_id": key})
        if doc is None:
            return False
        coll.replace_one({"_id": key}, apply_changes(_strip(doc), changes))
        return True

    def _remove(self, collection: str, key: str, session=None) -> None:
        if self.supports_sessions:
            self.db[collection].delete_one({"_id": key}, session=session)
        else:
            self.db[collection].delete_one({"_id": key})


def connect(settings: Settings) -> DocumentStore:
    """Open the configured database, falling back to Mongita when needed."""
    try:
        if settings.uses_mongo:
            client = MongoClient(settings.database_url)
            logger.info("Using MongoDB database %s", settings.database_name)
            return DocumentStore(client[settings.database_name], client)
        # Fallback to Mongita (embedded MongoDB-like client)
        from mongita import MongitaClientDisk

        client = MongitaClientDisk()
        logger.info("Using embedded Mongita database %s", settings.fallback_database_name)
        return DocumentStore(client[settings.fallback_database_name], client)
    except Exception:
        # As an ultimate fallback, use Mongita in-memory so the API stays usable
        logger.exception("Database initialisation failed, using in-memory Mongita")
        from mongita import MongitaClientMemory

        client = MongitaClientMemory()
        return DocumentStore(client[f"{settings.fallback_database_name}_runtime"], client)
