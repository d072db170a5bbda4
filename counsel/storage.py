import copy
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from counsel.db import get_session
from counsel.errors import PersistenceUnavailable
from counsel.models import LocalEntry

log = logging.getLogger(__name__)

Document = Dict[str, Any]
Snapshot = List[Tuple[str, Document]]


class Subscription:
    """
    Handle for a live query. Cancelling is idempotent.
    """

    def __init__(self, unsubscribe: Optional[Callable[[], None]] = None):
        self._unsubscribe = unsubscribe
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._unsubscribe is not None:
            self._unsubscribe()


# ============================================================
# Local key/value store (identity-absent scope)
# ============================================================
class SQLKeyValueStore:
    """JSON values under string keys, kept in the `localentry` table."""

    def __init__(self, engine=None):
        self.engine = engine

    def get(self, key: str, default: Any = None) -> Any:
        try:
            with get_session(self.engine) as session:
                entry = session.exec(
                    select(LocalEntry).where(LocalEntry.key == key)
                ).first()
        except SQLAlchemyError as e:
            raise PersistenceUnavailable(f"Could not read {key}") from e

        if entry is None:
            return default

        try:
            return json.loads(entry.value)
        except ValueError:
            log.warning("Discarding unreadable local value under %s", key)
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        try:
            with get_session(self.engine) as session:
                entry = session.get(LocalEntry, key)
                if entry is None:
                    entry = LocalEntry(key=key, value=payload)
                else:
                    entry.value = payload
                session.add(entry)
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceUnavailable(f"Could not write {key}") from e

    def delete(self, key: str) -> None:
        try:
            with get_session(self.engine) as session:
                entry = session.get(LocalEntry, key)
                if entry is not None:
                    session.delete(entry)
                    session.commit()
        except SQLAlchemyError as e:
            raise PersistenceUnavailable(f"Could not delete {key}") from e


# ============================================================
# Remote document store (identity-present scope)
# ============================================================
class DocumentStore(Protocol):
    """
    Hierarchical document store addressed by slash-separated paths, e.g.
    users/{uid}/sessions/{sid}/messages/{mid}.
    """

    def get(self, path: str) -> Optional[Document]: ...

    def set(self, path: str, data: Document, merge: bool = False) -> None: ...

    def delete(self, path: str) -> None: ...

    def list(
        self,
        collection: str,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Snapshot: ...

    def subscribe(
        self,
        collection: str,
        callback: Callable[[Snapshot], None],
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription: ...


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0]


class InMemoryDocumentStore:
    """
    Process-local DocumentStore. Each subscriber receives the current ordered
    snapshot immediately and again after every write to its collection.
    """

    def __init__(self):
        self._docs: Dict[str, Document] = {}
        self._listeners: Dict[int, Tuple[str, Callable, Optional[str], bool]] = {}
        self._next_listener = 0
        self._lock = threading.RLock()

    def get(self, path: str) -> Optional[Document]:
        with self._lock:
            doc = self._docs.get(path)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, path: str, data: Document, merge: bool = False) -> None:
        with self._lock:
            if merge and path in self._docs:
                self._docs[path] = {**self._docs[path], **copy.deepcopy(data)}
            else:
                self._docs[path] = copy.deepcopy(data)
        self._notify(_parent(path))

    def delete(self, path: str) -> None:
        with self._lock:
            existed = self._docs.pop(path, None) is not None
        if existed:
            self._notify(_parent(path))

    def list(
        self,
        collection: str,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Snapshot:
        with self._lock:
            rows = [
                (path.rsplit("/", 1)[1], copy.deepcopy(doc))
                for path, doc in self._docs.items()
                if _parent(path) == collection
            ]
        if order_by:
            rows.sort(key=lambda row: (row[1].get(order_by, 0), row[0]), reverse=descending)
        return rows

    def subscribe(
        self,
        collection: str,
        callback: Callable[[Snapshot], None],
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        with self._lock:
            token = self._next_listener
            self._next_listener += 1
            self._listeners[token] = (collection, callback, order_by, descending)

        def unsubscribe():
            with self._lock:
                self._listeners.pop(token, None)

        subscription = Subscription(unsubscribe)
        callback(self.list(collection, order_by, descending))
        return subscription

    def _notify(self, collection: str) -> None:
        with self._lock:
            targets = [
                (cb, order_by, desc)
                for coll, cb, order_by, desc in self._listeners.values()
                if coll == collection
            ]
        for callback, order_by, descending in targets:
            try:
                callback(self.list(collection, order_by, descending))
            except Exception:
                log.exception("Subscriber for %s failed", collection)
