"""Verdict caching: policy (``ResultCache``) and stores.

``PostgresCacheStore`` lives in ``egress_probe.cache.postgres`` and is imported
on demand so the in-memory path does not need a database driver loaded.
"""

from egress_probe.cache.store import CacheEntry, CacheStore, InMemoryCacheStore, ResultCache

__all__ = ["CacheEntry", "CacheStore", "InMemoryCacheStore", "ResultCache"]
