import threading
from unittest.mock import MagicMock

from freezegun import freeze_time

from security.store import InMemoryStore, RedisStore, get_store


class TestInMemoryStore:
    """Expiry and atomic updates of the process-local store."""

    def test_get_returns_value_before_expiry(self):
        store = InMemoryStore()
        with freeze_time("2026-01-01 12:00:00"):
            store.set("k", {"a": 1}, 60)
            assert store.get("k") == {"a": 1}

    def test_entry_expires_inline_without_sweep(self):
        store = InMemoryStore()
        with freeze_time("2026-01-01 12:00:00") as frozen:
            store.set("k", "v", 60)
            frozen.tick(61)
            assert store.get("k") is None

    def test_update_returning_none_deletes(self):
        store = InMemoryStore()
        store.set("k", 1, 60)
        store.update("k", lambda current: None, 60)
        assert store.get("k") is None

    def test_update_sees_none_for_missing_key(self):
        store = InMemoryStore()
        seen = []
        store.update("missing", lambda current: seen.append(current) or 5, 60)
        assert seen == [None]
        assert store.get("missing") == 5

    def test_sweep_removes_only_expired(self):
        store = InMemoryStore()
        with freeze_time("2026-01-01 12:00:00") as frozen:
            store.set("short", 1, 10)
            store.set("long", 2, 600)
            frozen.tick(30)
            assert store.sweep() == 1
            assert store.get("long") == 2
            assert len(store) == 1

    def test_concurrent_updates_do_not_lose_increments(self):
        store = InMemoryStore()

        def _bump():
            for _ in range(200):
                store.update("counter", lambda c: (c or 0) + 1, 60)

        threads = [threading.Thread(target=_bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("counter") == 1600

    def test_key_locks_are_released_after_use(self):
        store = InMemoryStore()
        for i in range(50):
            store.set(f"used-{i}", {"n": i}, 60)
            store.update(f"used-{i}", lambda current: None, 60)
            store.get(f"never-set-{i}")
            store.update(f"never-set-{i}", lambda current: None, 60)
            store.delete(f"never-set-{i}")

        assert len(store) == 0
        assert store._locks == {}

    def test_key_locks_are_released_under_contention(self):
        store = InMemoryStore()

        def _churn(n):
            for i in range(100):
                key = f"k{i % 5}"
                store.update(key, lambda c: (c or 0) + 1, 60)
                store.get(f"missing-{n}-{i}")

        threads = [threading.Thread(target=_churn, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(store.get(f"k{i}") for i in range(5)) == 600
        assert store._locks == {}


class TestRedisStore:
    """The shared-cache backend talks JSON to redis and lets redis expire keys."""

    def test_set_serializes_with_ttl(self):
        client = MagicMock()
        store = RedisStore(client, name="csrf")

        store.set("tok", {"fingerprint": "abc"}, 3600)

        client.set.assert_called_once_with("propertyguard:csrf:tok", '{"fingerprint": "abc"}', ex=3600)

    def test_get_missing_returns_none(self):
        client = MagicMock()
        client.get.return_value = None
        assert RedisStore(client).get("nope") is None

    def test_update_runs_under_lock_and_deletes_on_none(self):
        client = MagicMock()
        client.get.return_value = '{"count": 1}'
        store = RedisStore(client, name="rate")

        store.update("k", lambda current: None, 60)

        client.lock.assert_called_once_with("propertyguard:rate:k:lock", timeout=5)
        client.delete.assert_called_once_with("propertyguard:rate:k")

    def test_sweep_is_noop(self):
        assert RedisStore(MagicMock()).sweep() == 0


def test_app_gets_one_store_per_namespace(app):
    for name in ("csrf", "otp", "rate"):
        assert isinstance(get_store(name), InMemoryStore)
    assert get_store("csrf") is not get_store("otp")
