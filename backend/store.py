from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from . import config

logger = logging.getLogger(__name__)

DIARIES = "diaries"
CARDS = "cards"
SITUATIONS = "situations"
BEFORE_ITEMS = "beforeItems"
AFTER_ITEMS = "afterItems"
SETTINGS = "settings"

# Firestore caps a write batch at 500 operations.
BATCH_LIMIT = 450

Filters = Sequence[Tuple[str, Any]]


@dataclass
class StoredDocument:
    key: str
    data: Dict[str, Any]

    def get(self, field_name: str, default: Any = None) -> Any:
        return self.data.get(field_name, default)


SnapshotCallback = Callable[[List[StoredDocument]], None]
Unsubscribe = Callable[[], None]


class DocumentStore:
    """The slice of a managed document database the application relies on.

    Every lookup the application does is an equality filter on one or more
    fields, optionally ordered by a single field. Subscriptions push the full
    ordered result set of such a query whenever it changes.
    """

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        raise NotImplementedError

    def set(self, collection: str, key: str, data: Dict[str, Any], merge: bool = False) -> None:
        raise NotImplementedError

    def update(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def increment(self, collection: str, key: str, field_name: str, amount: int = 1) -> None:
        raise NotImplementedError

    def delete(self, collection: str, key: str) -> None:
        raise NotImplementedError

    def delete_many(self, collection: str, keys: Sequence[str]) -> int:
        raise NotImplementedError

    def query(
        self,
        collection: str,
        where: Filters = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        raise NotImplementedError

    def subscribe(
        self,
        collection: str,
        where: Filters,
        order_by: Optional[str],
        callback: SnapshotCallback,
    ) -> Unsubscribe:
        raise NotImplementedError


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, client: firestore.Client) -> None:
        self.client = client

    def _build_query(
        self,
        collection: str,
        where: Filters = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ):
        query = self.client.collection(collection)
        for field_name, value in where:
            query = query.where(filter=FieldFilter(field_name, "==", value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit:
            query = query.limit(limit)
        return query

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        _, doc_ref = self.client.collection(collection).add(data)
        return doc_ref.id

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        snapshot = self.client.collection(collection).document(key).get()
        if not snapshot.exists:
            return None
        return StoredDocument(snapshot.id, snapshot.to_dict() or {})

    def set(self, collection: str, key: str, data: Dict[str, Any], merge: bool = False) -> None:
        self.client.collection(collection).document(key).set(data, merge=merge)

    def update(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        self.client.collection(collection).document(key).update(data)

    def increment(self, collection: str, key: str, field_name: str, amount: int = 1) -> None:
        self.client.collection(collection).document(key).update(
            {field_name: firestore.Increment(amount)}
        )

    def delete(self, collection: str, key: str) -> None:
        self.client.collection(collection).document(key).delete()

    def delete_many(self, collection: str, keys: Sequence[str]) -> int:
        deleted = 0
        batch = self.client.batch()
        batch_count = 0
        for key in keys:
            batch.delete(self.client.collection(collection).document(key))
            deleted += 1
            batch_count += 1
            if batch_count >= BATCH_LIMIT:
                batch.commit()
                batch = self.client.batch()
                batch_count = 0
        if batch_count:
            batch.commit()
        return deleted

    def query(
        self,
        collection: str,
        where: Filters = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        snapshots = self._build_query(collection, where, order_by, descending, limit).stream()
        return [StoredDocument(snapshot.id, snapshot.to_dict() or {}) for snapshot in snapshots]

    def subscribe(
        self,
        collection: str,
        where: Filters,
        order_by: Optional[str],
        callback: SnapshotCallback,
    ) -> Unsubscribe:
        query = self._build_query(collection, where, order_by)

        # Runs on the Firestore watch thread.
        def on_snapshot(snapshots, changes, read_time) -> None:
            try:
                callback([StoredDocument(snapshot.id, snapshot.to_dict() or {}) for snapshot in snapshots])
            except Exception:
                logger.exception("Snapshot callback failed. collection=%s", collection)

        watch = query.on_snapshot(on_snapshot)
        return watch.unsubscribe


class _Listener:
    def __init__(self, where: Filters, order_by: Optional[str], callback: SnapshotCallback) -> None:
        self.where = list(where)
        self.order_by = order_by
        self.callback = callback
        self.active = True


class MemoryDocumentStore(DocumentStore):
    """In-process store used when Firestore is not configured (and in tests)."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: Dict[str, List[_Listener]] = {}
        self._lock = threading.RLock()

    def _documents(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _select(
        self,
        collection: str,
        where: Filters = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        with self._lock:
            matches = [
                StoredDocument(key, copy.deepcopy(data))
                for key, data in self._documents(collection).items()
                if all(data.get(field_name) == value for field_name, value in where)
            ]
        if order_by:
            # Like Firestore, documents without the ordering field are excluded.
            matches = [doc for doc in matches if doc.data.get(order_by) is not None]
            matches.sort(key=lambda doc: doc.data[order_by], reverse=descending)
        if limit:
            matches = matches[:limit]
        return matches

    def _notify(self, collection: str) -> None:
        with self._lock:
            listeners = [listener for listener in self._listeners.get(collection, []) if listener.active]
        for listener in listeners:
            snapshot = self._select(collection, listener.where, listener.order_by)
            try:
                listener.callback(snapshot)
            except Exception:
                logger.exception("Snapshot callback failed. collection=%s", collection)

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        key = uuid4().hex[:20]
        with self._lock:
            self._documents(collection)[key] = copy.deepcopy(data)
        self._notify(collection)
        return key

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        with self._lock:
            data = self._documents(collection).get(key)
            if data is None:
                return None
            return StoredDocument(key, copy.deepcopy(data))

    def set(self, collection: str, key: str, data: Dict[str, Any], merge: bool = False) -> None:
        with self._lock:
            documents = self._documents(collection)
            if merge and key in documents:
                documents[key].update(copy.deepcopy(data))
            else:
                documents[key] = copy.deepcopy(data)
        self._notify(collection)

    def update(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        with self._lock:
            documents = self._documents(collection)
            if key not in documents:
                raise KeyError(f"No document to update: {collection}/{key}")
            documents[key].update(copy.deepcopy(data))
        self._notify(collection)

    def increment(self, collection: str, key: str, field_name: str, amount: int = 1) -> None:
        with self._lock:
            documents = self._documents(collection)
            if key not in documents:
                raise KeyError(f"No document to update: {collection}/{key}")
            current = documents[key].get(field_name)
            documents[key][field_name] = (current if isinstance(current, (int, float)) else 0) + amount
        self._notify(collection)

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._documents(collection).pop(key, None)
        self._notify(collection)

    def delete_many(self, collection: str, keys: Sequence[str]) -> int:
        deleted = 0
        with self._lock:
            documents = self._documents(collection)
            for key in keys:
                if documents.pop(key, None) is not None:
                    deleted += 1
        self._notify(collection)
        return deleted

    def query(
        self,
        collection: str,
        where: Filters = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        return self._select(collection, where, order_by, descending, limit)

    def subscribe(
        self,
        collection: str,
        where: Filters,
        order_by: Optional[str],
        callback: SnapshotCallback,
    ) -> Unsubscribe:
        listener = _Listener(where, order_by, callback)
        with self._lock:
            self._listeners.setdefault(collection, []).append(listener)
        # Firestore delivers the current result set as the first snapshot.
        callback(self._select(collection, where, order_by))

        def unsubscribe() -> None:
            listener.active = False
            with self._lock:
                listeners = self._listeners.get(collection, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe


_document_store: Optional[DocumentStore] = None
_store_lock = threading.Lock()


def get_firestore_client() -> Optional[firestore.Client]:
    project_id = config.FIREBASE_PROJECT_ID
    credentials_json = config.FIREBASE_CREDENTIALS_JSON
    credentials_path = config.FIREBASE_CREDENTIALS_PATH

    try:
        if not firebase_admin._apps:
            if credentials_json:
                creds_dict = json.loads(credentials_json)
                resolved_project_id = project_id or creds_dict.get("project_id")
                options = {"projectId": resolved_project_id} if resolved_project_id else {}
                firebase_admin.initialize_app(credentials.Certificate(creds_dict), options)
            elif credentials_path:
                options = {"projectId": project_id} if project_id else {}
                firebase_admin.initialize_app(credentials.Certificate(credentials_path), options)
            else:
                # Application Default Credentials (Cloud Run service account)
                options = {"projectId": project_id} if project_id else {}
                firebase_admin.initialize_app(credentials.ApplicationDefault(), options)

        client = firestore.client()
        logger.info(
            "Firestore client initialized. app_project_id=%s client_project=%s",
            project_id,
            getattr(client, "project", None),
        )
        return client
    except Exception:
        logger.exception("Firestore not configured or failed to initialize")
        return None


def _firestore_requested() -> bool:
    if config.STORE_BACKEND == "firestore":
        return True
    if config.STORE_BACKEND == "memory":
        return False
    return bool(
        config.FIREBASE_PROJECT_ID
        or config.FIREBASE_CREDENTIALS_JSON
        or config.FIREBASE_CREDENTIALS_PATH
    )


def _create_document_store() -> DocumentStore:
    if _firestore_requested():
        client = get_firestore_client()
        if client is not None:
            return FirestoreDocumentStore(client)
        logger.error("Firestore requested but unavailable, falling back to in-memory store")
    logger.warning("Using in-memory document store; data is lost on restart")
    return MemoryDocumentStore()


def get_document_store() -> DocumentStore:
    global _document_store
    if _document_store is not None:
        return _document_store
    with _store_lock:
        if _document_store is None:
            _document_store = _create_document_store()
    return _document_store


def set_document_store(store: Optional[DocumentStore]) -> None:
    global _document_store
    with _store_lock:
        _document_store = store
