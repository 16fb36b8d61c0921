# ledger.py
# Cloud copy of every group: groups/{id} with expenses and settlements under it,
# the legacy flat expenses/{id} location, and users/{uid} with their friends.

import copy
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

import firebase_admin
from dotenv import load_dotenv
from firebase_admin import credentials, firestore
from google.api_core.exceptions import GoogleAPIError

load_dotenv()

logger = logging.getLogger(__name__)

LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")
FIREBASE_CREDENTIALS = os.getenv("FIREBASE_CREDENTIALS")

COLLECTION_GROUPS = "groups"
COLLECTION_USERS = "users"
EXPENSES = "expenses"
SETTLEMENTS = "settlements"
LEGACY_EXPENSES = "expenses"
FRIENDS = "friends"

Document = Dict[str, Any]
SnapshotCallback = Callable[[List[Document]], None]


class LedgerError(Exception):
    """The remote ledger could not complete a read or write."""


class WriteAck(NamedTuple):
    path: str
    update_time: Any


class Subscription:
    """Handle for a live listener; cancelling twice is harmless."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        self._cancel()


def _by_created_desc(docs: List[Document]) -> List[Document]:
    return sorted(docs, key=lambda d: d.get("createdAt") or 0, reverse=True)


class RemoteLedger(ABC):
    @abstractmethod
    def get_all(self, group_id: int, collection: str) -> List[Document]:
        """All documents of a group's collection, newest first."""

    @abstractmethod
    def get_by_id(self, group_id: int, collection: str, record_id: int) -> Optional[Document]:
        pass

    @abstractmethod
    def set(self, group_id: int, collection: str, record_id: int, data: Document, merge: bool = True) -> WriteAck:
        pass

    @abstractmethod
    def delete(self, group_id: int, collection: str, record_id: int) -> WriteAck:
        pass

    @abstractmethod
    def subscribe(self, group_id: int, collection: str, callback: SnapshotCallback) -> Subscription:
        """Deliver the full collection to ``callback`` now and on every change."""

    @abstractmethod
    def legacy_expenses(self, group_id: int) -> List[Document]:
        pass

    @abstractmethod
    def get_group(self, group_id: int) -> Optional[Document]:
        pass

    @abstractmethod
    def set_group(self, group_id: int, data: Document, merge: bool = True) -> WriteAck:
        pass

    @abstractmethod
    def delete_group(self, group_id: int) -> WriteAck:
        """Delete the group document together with its expenses and settlements."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[Document]:
        """The first user document whose email matches, or None."""

    @abstractmethod
    def get_friends(self, user_id: str) -> List[Document]:
        pass

    @abstractmethod
    def set_friend(self, user_id: str, friend_id: str, data: Document) -> WriteAck:
        pass


class MemoryLedger(RemoteLedger):
    """In-process ledger for offline use and tests.

    Listeners are called synchronously on the writing thread.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._groups: Dict[int, Document] = {}
        self._collections: Dict[Tuple[int, str], Dict[int, Document]] = {}
        self._legacy: Dict[int, Document] = {}
        self._users: Dict[str, Document] = {}
        self._friends: Dict[str, Dict[str, Document]] = {}
        self._listeners: Dict[Tuple[int, str], Dict[int, SnapshotCallback]] = {}
        self._next_listener = 0

    @staticmethod
    def _ack(path: str) -> WriteAck:
        return WriteAck(path=path, update_time=datetime.now(timezone.utc))

    def _snapshot(self, group_id: int, collection: str) -> List[Document]:
        with self._lock:
            docs = copy.deepcopy(list(self._collections.get((group_id, collection), {}).values()))
        return _by_created_desc(docs)

    def _emit(self, group_id: int, collection: str) -> None:
        with self._lock:
            callbacks = list(self._listeners.get((group_id, collection), {}).values())
        if not callbacks:
            return
        docs = self._snapshot(group_id, collection)
        for callback in callbacks:
            callback(copy.deepcopy(docs))

    def get_all(self, group_id, collection):
        return self._snapshot(group_id, collection)

    def get_by_id(self, group_id, collection, record_id):
        with self._lock:
            doc = self._collections.get((group_id, collection), {}).get(record_id)
            return copy.deepcopy(doc)

    def set(self, group_id, collection, record_id, data, merge=True):
        with self._lock:
            docs = self._collections.setdefault((group_id, collection), {})
            current = docs.get(record_id, {}) if merge else {}
            docs[record_id] = {**current, **copy.deepcopy(data)}
        self._emit(group_id, collection)
        return self._ack(f"{COLLECTION_GROUPS}/{group_id}/{collection}/{record_id}")

    def delete(self, group_id, collection, record_id):
        with self._lock:
            self._collections.get((group_id, collection), {}).pop(record_id, None)
        self._emit(group_id, collection)
        return self._ack(f"{COLLECTION_GROUPS}/{group_id}/{collection}/{record_id}")

    def subscribe(self, group_id, collection, callback):
        key = (group_id, collection)
        with self._lock:
            token = self._next_listener
            self._next_listener += 1
            self._listeners.setdefault(key, {})[token] = callback

        def cancel():
            with self._lock:
                self._listeners.get(key, {}).pop(token, None)

        callback(self._snapshot(group_id, collection))
        return Subscription(cancel)

    def listener_count(self, group_id: int, collection: str) -> int:
        with self._lock:
            return len(self._listeners.get((group_id, collection), {}))

    def legacy_expenses(self, group_id):
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._legacy.values() if d.get("groupId") == group_id]
        return _by_created_desc(docs)

    def put_legacy_expense(self, record_id: int, data: Document) -> WriteAck:
        """Seed the legacy flat location, as older app versions wrote it."""
        with self._lock:
            self._legacy[record_id] = copy.deepcopy(data)
        return self._ack(f"{LEGACY_EXPENSES}/{record_id}")

    def get_group(self, group_id):
        with self._lock:
            return copy.deepcopy(self._groups.get(group_id))

    def set_group(self, group_id, data, merge=True):
        with self._lock:
            current = self._groups.get(group_id, {}) if merge else {}
            self._groups[group_id] = {**current, **copy.deepcopy(data)}
        return self._ack(f"{COLLECTION_GROUPS}/{group_id}")

    def delete_group(self, group_id):
        with self._lock:
            self._groups.pop(group_id, None)
            for collection in (EXPENSES, SETTLEMENTS):
                self._collections.pop((group_id, collection), None)
        for collection in (EXPENSES, SETTLEMENTS):
            self._emit(group_id, collection)
        return self._ack(f"{COLLECTION_GROUPS}/{group_id}")

    def get_user(self, user_id):
        with self._lock:
            return copy.deepcopy(self._users.get(user_id))

    def put_user(self, user_id: str, data: Document) -> WriteAck:
        with self._lock:
            self._users[user_id] = {"id": user_id, **copy.deepcopy(data)}
        return self._ack(f"{COLLECTION_USERS}/{user_id}")

    def find_user_by_email(self, email):
        with self._lock:
            for doc in self._users.values():
                if doc.get("email") == email:
                    return copy.deepcopy(doc)
        return None

    def get_friends(self, user_id):
        with self._lock:
            return copy.deepcopy(list(self._friends.get(user_id, {}).values()))

    def set_friend(self, user_id, friend_id, data):
        with self._lock:
            self._friends.setdefault(user_id, {})[friend_id] = copy.deepcopy(data)
        return self._ack(f"{COLLECTION_USERS}/{user_id}/{FRIENDS}/{friend_id}")


def firestore_client(credentials_path: Optional[str] = FIREBASE_CREDENTIALS):
    """Return a Firestore client, initialising the default Firebase app once."""
    try:
        app = firebase_admin.get_app()
    except ValueError:
        if credentials_path:
            cred = credentials.Certificate(credentials_path)
        else:
            cred = credentials.ApplicationDefault()
        app = firebase_admin.initialize_app(cred)
    return firestore.client(app)


class FirestoreLedger(RemoteLedger):
    def __init__(self, client=None):
        self._db = client if client is not None else firestore_client()

    def _group_ref(self, group_id: int):
        return self._db.collection(COLLECTION_GROUPS).document(str(group_id))

    def _collection(self, group_id: int, collection: str):
        return self._group_ref(group_id).collection(collection)

    def get_all(self, group_id, collection):
        query = self._collection(group_id, collection).order_by("createdAt", direction=firestore.Query.DESCENDING)
        try:
            return [doc.to_dict() for doc in query.stream()]
        except GoogleAPIError as e:
            raise LedgerError(f"Reading {collection} of group {group_id} failed: {e}") from e

    def get_by_id(self, group_id, collection, record_id):
        try:
            doc = self._collection(group_id, collection).document(str(record_id)).get()
        except GoogleAPIError as e:
            raise LedgerError(f"Reading {collection}/{record_id} of group {group_id} failed: {e}") from e
        return doc.to_dict() if doc.exists else None

    def set(self, group_id, collection, record_id, data, merge=True):
        ref = self._collection(group_id, collection).document(str(record_id))
        try:
            result = ref.set(data, merge=merge)
        except GoogleAPIError as e:
            raise LedgerError(f"Writing {ref.path} failed: {e}") from e
        return WriteAck(path=ref.path, update_time=result.update_time)

    def delete(self, group_id, collection, record_id):
        ref = self._collection(group_id, collection).document(str(record_id))
        try:
            deleted_at = ref.delete()
        except GoogleAPIError as e:
            raise LedgerError(f"Deleting {ref.path} failed: {e}") from e
        return WriteAck(path=ref.path, update_time=deleted_at)

    def subscribe(self, group_id, collection, callback):
        query = self._collection(group_id, collection).order_by("createdAt", direction=firestore.Query.DESCENDING)

        def on_snapshot(docs, changes, read_time):
            callback([doc.to_dict() for doc in docs])

        try:
            watch = query.on_snapshot(on_snapshot)
        except GoogleAPIError as e:
            raise LedgerError(f"Listening to {collection} of group {group_id} failed: {e}") from e
        return Subscription(watch.unsubscribe)

    def legacy_expenses(self, group_id):
        query = self._db.collection(LEGACY_EXPENSES).where("groupId", "==", group_id)
        try:
            return _by_created_desc([doc.to_dict() for doc in query.stream()])
        except GoogleAPIError as e:
            raise LedgerError(f"Reading legacy expenses of group {group_id} failed: {e}") from e

    def get_group(self, group_id):
        try:
            doc = self._group_ref(group_id).get()
        except GoogleAPIError as e:
            raise LedgerError(f"Reading group {group_id} failed: {e}") from e
        return doc.to_dict() if doc.exists else None

    def set_group(self, group_id, data, merge=True):
        ref = self._group_ref(group_id)
        try:
            result = ref.set(data, merge=merge)
        except GoogleAPIError as e:
            raise LedgerError(f"Writing {ref.path} failed: {e}") from e
        return WriteAck(path=ref.path, update_time=result.update_time)

    def delete_group(self, group_id):
        ref = self._group_ref(group_id)
        try:
            # Firestore keeps sub-collections alive after their parent is gone
            batch = self._db.batch()
            for collection in (EXPENSES, SETTLEMENTS):
                for doc in ref.collection(collection).stream():
                    batch.delete(doc.reference)
            batch.delete(ref)
            results = batch.commit()
        except GoogleAPIError as e:
            raise LedgerError(f"Deleting {ref.path} failed: {e}") from e
        update_time = results[-1].update_time if results else None
        return WriteAck(path=ref.path, update_time=update_time)

    def get_user(self, user_id):
        try:
            doc = self._db.collection(COLLECTION_USERS).document(user_id).get()
        except GoogleAPIError as e:
            raise LedgerError(f"Reading user {user_id} failed: {e}") from e
        if not doc.exists:
            return None
        return {"id": user_id, **doc.to_dict()}

    def _user_ref(self, user_id: str):
        return self._db.collection(COLLECTION_USERS).document(user_id)

    def find_user_by_email(self, email):
        query = self._db.collection(COLLECTION_USERS).where("email", "==", email).limit(1)
        try:
            docs = list(query.stream())
        except GoogleAPIError as e:
            raise LedgerError(f"Looking up user by email failed: {e}") from e
        if not docs:
            return None
        return {"id": docs[0].id, **docs[0].to_dict()}

    def get_friends(self, user_id):
        try:
            return [doc.to_dict() for doc in self._user_ref(user_id).collection(FRIENDS).stream()]
        except GoogleAPIError as e:
            raise LedgerError(f"Reading friends of {user_id} failed: {e}") from e

    def set_friend(self, user_id, friend_id, data):
        ref = self._user_ref(user_id).collection(FRIENDS).document(friend_id)
        try:
            result = ref.set(data)
        except GoogleAPIError as e:
            raise LedgerError(f"Writing {ref.path} failed: {e}") from e
        return WriteAck(path=ref.path, update_time=result.update_time)


def open_ledger(backend: str = LEDGER_BACKEND) -> RemoteLedger:
    if backend == "firestore":
        logger.info("Using Firestore ledger")
        return FirestoreLedger()
    if backend == "memory":
        logger.info("Using in-process ledger, nothing is shared between processes")
        return MemoryLedger()
    raise ValueError(f"Unknown LEDGER_BACKEND {backend!r}")
