# directory.py

import logging
import os
import time
from collections import OrderedDict
from threading import RLock
from typing import Callable, Generic, Hashable, List, Optional, Tuple, TypeVar

from dotenv import load_dotenv
from pydantic import ValidationError as SchemaError

import schemas
from ledger import LedgerError, RemoteLedger

load_dotenv()

logger = logging.getLogger(__name__)

PROFILE_CACHE_SIZE = int(os.getenv("PROFILE_CACHE_SIZE", "256"))
PROFILE_CACHE_TTL = float(os.getenv("PROFILE_CACHE_TTL", "300"))

YOU = "You"
UNKNOWN = "Unknown"

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Bounded LRU cache whose entries expire ``ttl`` seconds after insertion."""

    def __init__(self, maxsize: int = PROFILE_CACHE_SIZE, ttl: float = PROFILE_CACHE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[float, V]]" = OrderedDict()
        self._lock = RLock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)

    def invalidate(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key) -> bool:
        return self.get(key) is not None


class MemberDirectory:
    def __init__(self, ledger: RemoteLedger, cache: Optional[TTLCache] = None):
        self.ledger = ledger
        self.cache = cache if cache is not None else TTLCache()

    def get_profile(self, user_id: str) -> Optional[schemas.UserProfile]:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached
        try:
            doc = self.ledger.get_user(user_id)
        except LedgerError as e:
            # Not cached, the next lookup tries again
            logger.warning("Could not fetch profile %s: %s", user_id, e)
            return None
        if doc is None:
            logger.debug("No user found with id %s", user_id)
            return None
        try:
            profile = schemas.UserProfile.model_validate({"id": user_id, **doc})
        except SchemaError:
            logger.warning("Malformed profile document for %s", user_id)
            return None
        self.cache.put(user_id, profile)
        return profile

    def display_name(self, user_id: str, current_user: Optional[str] = None) -> str:
        if current_user is not None and user_id == current_user:
            return YOU
        profile = self.get_profile(user_id)
        if profile is None or not profile.name:
            return UNKNOWN
        return profile.name

    def add_friend(self, user_id: str, email: str) -> Optional[schemas.UserProfile]:
        """Look a user up by email and store them as one of ``user_id``'s friends.

        Returns the friend's profile, or None when nobody has that email, the
        email is the user's own, or the ledger could not be reached.
        """
        email = email.strip()
        if not email:
            return None
        try:
            doc = self.ledger.find_user_by_email(email)
        except LedgerError as e:
            logger.warning("Could not look up %s: %s", email, e)
            return None
        if doc is None:
            logger.info("No user found with email %s", email)
            return None
        friend = schemas.UserProfile.model_validate({**doc, "name": doc.get("name") or UNKNOWN, "email": email})
        if friend.id == user_id:
            logger.info("%s tried to add themselves as a friend", user_id)
            return None
        try:
            self.ledger.set_friend(user_id, friend.id, friend.model_dump())
        except LedgerError as e:
            logger.warning("Could not add friend %s for %s: %s", friend.id, user_id, e)
            return None
        self.cache.put(friend.id, friend)
        return friend

    def friends(self, user_id: str) -> List[schemas.UserProfile]:
        try:
            docs = self.ledger.get_friends(user_id)
        except LedgerError as e:
            logger.warning("Could not fetch friends of %s: %s", user_id, e)
            return []
        friends = []
        for doc in docs:
            try:
                friends.append(schemas.UserProfile.model_validate(doc))
            except SchemaError:
                logger.warning("Skipping malformed friend document of %s", user_id)
        return sorted(friends, key=lambda f: f.name.lower())
