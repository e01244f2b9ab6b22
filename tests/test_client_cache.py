"""Unit tests for the namespaced client cache."""

import threading

import pytest

from common.rwlock import ReadWriteLock
from reflector.client_cache import NamespacedClientCache
from reflector.exceptions import ConflictError, NotFoundError
from tests.fakes import make_secret


class TestHandleMemoization:
    """Test lazy construction and reuse of handles."""

    def test_handle_is_built_on_first_use(self):
        built = []
        cache = NamespacedClientCache(lambda ns: built.append(ns) or object())

        assert len(cache) == 0
        cache.handle("ns-a")

        assert built == ["ns-a"]
        assert len(cache) == 1

    def test_same_namespace_reuses_handle(self):
        built = []
        cache = NamespacedClientCache(lambda ns: built.append(ns) or object())

        first = cache.handle("ns-a")
        second = cache.handle("ns-a")

        assert first is second
        assert built == ["ns-a"]

    def test_one_handle_per_namespace(self):
        cache = NamespacedClientCache(lambda ns: object())

        a = cache.handle("ns-a")
        b = cache.handle("ns-b")

        assert a is not b
        assert cache.namespaces() == ["ns-a", "ns-b"]


class TestThreadSafety:
    """Test concurrent lookup and insert."""

    def test_racing_constructors_share_one_handle(self):
        barrier = threading.Barrier(2, timeout=5)
        built = []

        def factory(namespace):
            handle = object()
            built.append(handle)
            barrier.wait()
            return handle

        cache = NamespacedClientCache(factory)
        results = []

        def lookup():
            results.append(cache.handle("ns-a"))

        threads = [threading.Thread(target=lookup) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(built) == 2
        assert len(results) == 2
        assert results[0] is results[1]
        assert results[0] in built
        assert len(cache) == 1

    def test_concurrent_lookups_across_namespaces(self):
        cache = NamespacedClientCache(lambda ns: object())
        namespaces = [f"ns-{i}" for i in range(10)]
        seen = {}
        seen_lock = threading.Lock()
        errors = []

        def worker():
            try:
                for _ in range(50):
                    for ns in namespaces:
                        handle = cache.handle(ns)
                        with seen_lock:
                            seen.setdefault(ns, set()).add(id(handle))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert len(cache) == 10
        assert all(len(ids) == 1 for ids in seen.values())


class TestReadWriteLock:
    """Test the reader/writer lock used by the cache."""

    def test_readers_share_the_lock(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(3, timeout=5)

        def reader():
            with lock.read_locked():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert not any(t.is_alive() for t in threads)

    def test_writer_waits_for_readers(self):
        lock = ReadWriteLock()
        order = []
        lock.acquire_read()

        def writer():
            with lock.write_locked():
                order.append("writer")

        t = threading.Thread(target=writer)
        t.start()
        t.join(timeout=0.2)
        order.append("reader-done")
        lock.release_read()
        t.join(timeout=5)

        assert order == ["reader-done", "writer"]


class TestRemoteCalls:
    """Test async get/create/replace delegation."""

    @pytest.mark.asyncio
    async def test_get_resolves_namespace_from_full_name(self, cluster, clients):
        cluster.add("ns-b/db-creds", {"password": b"p0"})

        secret = await clients.get("ns-b/db-creds")

        assert secret.data.data == {"password": b"p0"}
        assert cluster.calls == [("get", "ns-b/db-creds")]
        assert clients.namespaces() == ["ns-b"]

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, clients):
        with pytest.raises(NotFoundError):
            await clients.get("ns-b/missing")

    @pytest.mark.asyncio
    async def test_create_uses_namespace_handle(self, cluster, clients):
        await clients.create("ns-b", make_secret("ns-b/db-creds", {"password": b"p1"}))

        assert "ns-b/db-creds" in cluster.secrets
        assert cluster.calls == [("create", "ns-b/db-creds")]

    @pytest.mark.asyncio
    async def test_create_existing_raises_conflict(self, cluster, clients):
        cluster.add("ns-b/db-creds", {"password": b"p0"})

        with pytest.raises(ConflictError):
            await clients.create("ns-b", make_secret("ns-b/db-creds", {"password": b"p1"}))

    @pytest.mark.asyncio
    async def test_replace_writes_through_handle(self, cluster, clients):
        existing = cluster.add("ns-c/db-creds", {"password": b"p0"})
        updated = make_secret("ns-c/db-creds", {"password": b"p1"}, resource_version=existing.resource_version)

        await clients.replace("ns-c/db-creds", updated)

        assert cluster.secrets["ns-c/db-creds"].data.data == {"password": b"p1"}

    @pytest.mark.asyncio
    async def test_handles_are_reused_across_calls(self, cluster):
        built = []

        def factory(namespace):
            built.append(namespace)
            return cluster.handle_factory(namespace)

        clients = NamespacedClientCache(factory)
        cluster.add("ns-b/a", {"k": b"v"})
        cluster.add("ns-b/b", {"k": b"v"})

        await clients.get("ns-b/a")
        await clients.get("ns-b/b")

        assert built == ["ns-b"]
