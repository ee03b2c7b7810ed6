import logging

import pytest

import egress_probe.cache.postgres as postgres_store
from egress_probe.cache import CacheEntry, InMemoryCacheStore, ResultCache
from egress_probe.cache.postgres import PostgresCacheStore
from egress_probe.nodes import build_descriptors
from egress_probe.probing.models import Verdict, VerdictKind

from probe_helpers import make_target


@pytest.fixture
def node(raw_nodes):
    return build_descriptors(raw_nodes)[0]


@pytest.fixture
def target():
    return make_target()


def test_cache_entry_reads_legacy_latency_key():
    assert CacheEntry.from_dict({"ok": True, "latency": 120}) == CacheEntry(ok=True, latency_ms=120.0)
    assert CacheEntry(ok=False, latency_ms=5.0).to_dict() == {"ok": False}


def test_pass_is_recorded_and_trusted(node, target):
    store = InMemoryCacheStore()
    cache = ResultCache(store)

    cache.record(node, target, Verdict(VerdictKind.STRONG_PASS, latency_ms=88.0))

    assert store.get(node.fingerprint(target.url)) == {"ok": True, "latency_ms": 88.0}
    hit = cache.lookup(node, target)
    assert hit.kind is VerdictKind.PASS
    assert hit.cached
    assert hit.latency_ms == 88.0


@pytest.mark.parametrize("kind", [VerdictKind.FAIL, VerdictKind.BLOCKED, VerdictKind.NETWORK_ERROR])
def test_failures_are_recorded_without_latency(node, target, kind):
    store = InMemoryCacheStore()

    ResultCache(store).record(node, target, Verdict(kind, latency_ms=40.0))

    assert store.get(node.fingerprint(target.url)) == {"ok": False}


def test_indeterminate_is_never_cached(node, target):
    store = InMemoryCacheStore()

    ResultCache(store).record(node, target, Verdict(VerdictKind.INDETERMINATE))

    assert len(store) == 0


def test_cached_failure_trusted_unless_disabled(node, target):
    store = InMemoryCacheStore()
    store.set(node.fingerprint(target.url), {"ok": False})

    trusted = ResultCache(store).lookup(node, target)
    assert trusted.kind is VerdictKind.FAIL
    assert trusted.cached

    assert ResultCache(store, trust_failures=False).lookup(node, target) is None


def test_cached_pass_trusted_even_when_failures_are_not(node, target):
    store = InMemoryCacheStore()
    store.set(node.fingerprint(target.url), {"ok": True})

    assert ResultCache(store, trust_failures=False).lookup(node, target).passed


def test_disabled_cache_neither_reads_nor_writes(node, target):
    store = InMemoryCacheStore()
    store.set(node.fingerprint(target.url), {"ok": True})
    cache = ResultCache(store, enabled=False)

    assert cache.lookup(node, target) is None
    cache.record(node, make_target(url="https://other.example/"), Verdict(VerdictKind.PASS))
    assert len(store) == 1


def test_cache_hits_are_not_rewritten(node, target):
    store = InMemoryCacheStore()

    ResultCache(store).record(node, target, Verdict(VerdictKind.PASS, cached=True))

    assert len(store) == 0


class BrokenStore:
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value):
        raise ConnectionError("cache down")


def test_store_failures_are_logged_and_contained(node, target, caplog):
    cache = ResultCache(BrokenStore())

    with caplog.at_level(logging.WARNING, logger="egress_probe.cache.store"):
        assert cache.lookup(node, target) is None
        cache.record(node, target, Verdict(VerdictKind.PASS))

    assert "cache read failed" in caplog.text
    assert "cache write failed" in caplog.text


@pytest.fixture
def pg_store(fake_pool, monkeypatch):
    def pool_factory(conninfo, min_size, max_size, kwargs):
        assert conninfo == "postgresql://example"
        assert min_size == 1
        assert max_size == 2
        assert kwargs == {}
        return fake_pool

    monkeypatch.setattr(postgres_store, "ConnectionPool", pool_factory)
    return PostgresCacheStore("postgresql://example")


def test_postgres_get_returns_value_column(pg_store, fake_pool, fake_conn):
    fake_conn.next_row = {"value": {"ok": True, "latency_ms": 12}}

    assert pg_store.get("k1") == {"ok": True, "latency_ms": 12}

    cursor = fake_conn.cursors[-1]
    assert cursor.executed == [(postgres_store.SELECT_SQL, {"key": "k1"})]
    assert cursor.row_factory is postgres_store.dict_row
    assert fake_pool.request_count == 1


def test_postgres_get_miss_returns_none(pg_store):
    assert pg_store.get("missing") is None


def test_postgres_get_respects_max_age(fake_pool, fake_conn, monkeypatch):
    monkeypatch.setattr(postgres_store, "ConnectionPool", lambda **_: fake_pool)
    store = PostgresCacheStore("postgresql://example", max_age_seconds=3600)

    store.get("k1")

    query, params = fake_conn.cursors[-1].executed[-1]
    assert query == postgres_store.SELECT_FRESH_SQL
    assert params == {"key": "k1", "max_age": 3600}


def test_postgres_set_upserts_inside_transaction(pg_store, fake_conn):
    pg_store.set("k1", {"ok": False})

    query, params = fake_conn.cursors[-1].executed[-1]
    assert query == postgres_store.UPSERT_SQL
    assert params["key"] == "k1"
    assert params["value"].obj == {"ok": False}
    assert fake_conn.transactions[-1].entered
    assert fake_conn.transactions[-1].exited


def test_postgres_ensure_schema_and_close(pg_store, fake_pool, fake_conn):
    pg_store.ensure_schema()
    pg_store.close()

    assert fake_conn.cursors[-1].executed == [(postgres_store.CREATE_TABLE_SQL, None)]
    assert fake_pool.closed


@pytest.mark.parametrize(
    "kwargs",
    [
        {"min_size": 0},
        {"min_size": 3, "max_size": 2},
        {"max_age_seconds": 0},
    ],
)
def test_postgres_store_validates_arguments(kwargs, monkeypatch, fake_pool):
    monkeypatch.setattr(postgres_store, "ConnectionPool", lambda **_: fake_pool)

    with pytest.raises(ValueError):
        PostgresCacheStore("postgresql://example", **kwargs)
