"""Memoize probe verdicts across runs.

Entries are keyed by ``NodeDescriptor.fingerprint(target.url)`` and hold only
``{"ok": bool, "latency_ms": float?}``. Expiry is the store's business; this
module never deletes anything.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from egress_probe.nodes import NodeDescriptor
from egress_probe.probing.models import Verdict, VerdictKind
from egress_probe.probing.targets import ProbeTarget

LOGGER = logging.getLogger(__name__)

# Verdicts recorded as a bare failure; INDETERMINATE is never cached.
_CACHEABLE_FAILURES = frozenset({VerdictKind.FAIL, VerdictKind.BLOCKED, VerdictKind.NETWORK_ERROR})


@dataclass(frozen=True)
class CacheEntry:
    ok: bool
    latency_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok}
        if self.ok and self.latency_ms is not None:
            data["latency_ms"] = self.latency_ms
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        latency = data.get("latency_ms", data.get("latency"))
        return cls(ok=bool(data.get("ok")), latency_ms=float(latency) if latency is not None else None)


class CacheStore(Protocol):
    """Key/value store for cache entries, keyed by arbitrary strings."""

    def get(self, key: str) -> Optional[Mapping[str, Any]]:
        ...

    def set(self, key: str, value: Mapping[str, Any]) -> None:
        ...


class InMemoryCacheStore:
    """Process-local store; useful for tests and single-run deduplication."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Mapping[str, Any]]:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def set(self, key: str, value: Mapping[str, Any]) -> None:
        self._data[key] = dict(value)

    def __len__(self) -> int:
        return len(self._data)


class ResultCache:
    """Apply the caching policy on top of a ``CacheStore``.

    A cached success is always trusted. A cached failure is trusted unless
    ``trust_failures`` is off, in which case the probe runs again. A disabled
    cache neither reads nor writes.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        *,
        enabled: bool = True,
        trust_failures: bool = True,
    ) -> None:
        self._store = store if store is not None else InMemoryCacheStore()
        self._enabled = enabled
        self._trust_failures = trust_failures

    def lookup(self, node: NodeDescriptor, target: ProbeTarget) -> Optional[Verdict]:
        """Return a verdict that replaces probing, or None to probe."""
        if not self._enabled:
            return None
        try:
            raw = self._store.get(node.fingerprint(target.url))
        except Exception as exc:  # noqa: BLE001 - a broken store only costs a live probe
            LOGGER.warning("cache read failed for %s/%s: %s", node.name, target.name, exc)
            return None
        if raw is None:
            return None

        entry = CacheEntry.from_dict(raw)
        if entry.ok:
            return Verdict(VerdictKind.PASS, detail="cached pass", latency_ms=entry.latency_ms, cached=True)
        if self._trust_failures:
            return Verdict(VerdictKind.FAIL, detail="cached failure", cached=True)
        return None

    def record(self, node: NodeDescriptor, target: ProbeTarget, verdict: Verdict) -> None:
        """Write the outcome of a live probe; cache hits are never re-written."""
        if not self._enabled or verdict.cached:
            return
        if verdict.passed:
            entry = CacheEntry(ok=True, latency_ms=verdict.latency_ms)
        elif verdict.kind in _CACHEABLE_FAILURES:
            entry = CacheEntry(ok=False)
        else:
            return
        try:
            self._store.set(node.fingerprint(target.url), entry.to_dict())
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("cache write failed for %s/%s: %s", node.name, target.name, exc)


__all__ = ["CacheEntry", "CacheStore", "InMemoryCacheStore", "ResultCache"]
