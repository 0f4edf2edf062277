import json
import logging
import threading
from contextlib import contextmanager

import redis
from flask import current_app

from utils.clock import now_ts

logger = logging.getLogger(__name__)

NAMESPACES = ("csrf", "otp", "rate")


class KeyValueStore:
    """Volatile keyed store with per-entry expiry.

    Values are plain dicts/ints/strings. ``update`` is the only atomic
    read-modify-write primitive; callers must not emulate it with get + set.
    """

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value, ttl_seconds: int):
        raise NotImplementedError

    def delete(self, key):
        raise NotImplementedError

    def update(self, key, fn, ttl_seconds: int):
        """Apply ``fn(current_or_None) -> new_or_None`` atomically.

        Returning None from ``fn`` deletes the key, anything else is stored
        with a fresh ``ttl_seconds``. Returns whatever ``fn`` returned.
        """
        raise NotImplementedError

    def sweep(self) -> int:
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    def __init__(self, name: str = "default"):
        self.name = name
        self._data = {}  # key -> (value, expires_at_ts)
        self._locks = {}  # key -> [lock, holders]; dropped when the last holder leaves
        self._guard = threading.Lock()

    @contextmanager
    def _locked(self, key):
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._locks[key] = slot
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[key]

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now_ts():
            self._data.pop(key, None)
            return None
        return value

    def get(self, key):
        with self._locked(key):
            return self._live(key)

    def set(self, key, value, ttl_seconds: int):
        with self._locked(key):
            self._data[key] = (value, now_ts() + ttl_seconds)

    def delete(self, key):
        with self._locked(key):
            self._data.pop(key, None)

    def update(self, key, fn, ttl_seconds: int):
        with self._locked(key):
            current = self._live(key)
            new_value = fn(current)
            if new_value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = (new_value, now_ts() + ttl_seconds)
            return new_value

    def sweep(self) -> int:
        now = now_ts()
        with self._guard:
            expired = [k for k, (_, exp) in list(self._data.items()) if exp <= now]
            for k in expired:
                self._data.pop(k, None)
        return len(expired)

    def __len__(self):
        return len(self._data)

class RedisStore(KeyValueStore):
    """Shared-cache backend. Redis expires keys itself, so sweep does nothing."""

    def __init__(self, client, name: str = "default", lock_timeout: int = 5):
        self.client = client
        self.name = name
        self.lock_timeout = lock_timeout

    def _k(self, key) -> str:
        return f"propertyguard:{self.name}:{key}"

    def get(self, key):
        raw = self.client.get(self._k(key))
        return json.loads(raw) if raw is not None else None

    def set(self, key, value, ttl_seconds: int):
        self.client.set(self._k(key), json.dumps(value), ex=max(int(ttl_seconds), 1))

    def delete(self, key):
        self.client.delete(self._k(key))

    def update(self, key, fn, ttl_seconds: int):
        full_key = self._k(key)
        with self.client.lock(f"{full_key}:lock", timeout=self.lock_timeout):
            raw = self.client.get(full_key)
            current = json.loads(raw) if raw is not None else None
            new_value = fn(current)
            if new_value is None:
                self.client.delete(full_key)
            else:
                self.client.set(full_key, json.dumps(new_value), ex=max(int(ttl_seconds), 1))
            return new_value

    def sweep(self) -> int:
        return 0


def init_stores(app):
    redis_url = app.config.get("REDIS_URL")
    stores = {}
    if redis_url:
        client = redis.from_url(redis_url, decode_responses=True)
        for name in NAMESPACES:
            stores[name] = RedisStore(client, name=name)
        logger.info("Volatile stores backed by Redis")
    else:
        for name in NAMESPACES:
            stores[name] = InMemoryStore(name=name)
        logger.info("Volatile stores kept in process memory")
    app.extensions["propertyguard_stores"] = stores
    return stores


def get_store(name: str) -> KeyValueStore:
    return current_app.extensions["propertyguard_stores"][name]
