import uuid

import pytest


@pytest.mark.integration
def test_cache_store_round_trip(cache_store) -> None:
    key = f"egress-probe:check:{uuid.uuid4().hex}"

    assert cache_store.get(key) is None

    cache_store.set(key, {"ok": True, "latency_ms": 321.0})
    assert cache_store.get(key) == {"ok": True, "latency_ms": 321.0}

    cache_store.set(key, {"ok": False})
    assert cache_store.get(key) == {"ok": False}
