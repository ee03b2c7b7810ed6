"""PostgreSQL-backed cache store shared between probing runs.

Entries live in a single ``probe_cache`` table keyed by fingerprint. Reads
can ignore rows older than ``max_age_seconds``; nothing is ever deleted here,
pruning old rows is left to the database owner.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Mapping, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from egress_probe.logging_utils import perf

LOGGER = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS probe_cache (
        cache_key TEXT PRIMARY KEY,
        value JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""

SELECT_SQL = "SELECT value FROM probe_cache WHERE cache_key = %(key)s"

SELECT_FRESH_SQL = """
    SELECT value FROM probe_cache
    WHERE cache_key = %(key)s
      AND updated_at >= now() - make_interval(secs => %(max_age)s)
"""

UPSERT_SQL = """
    INSERT INTO probe_cache (cache_key, value, updated_at)
    VALUES (%(key)s, %(value)s, now())
    ON CONFLICT (cache_key) DO UPDATE
    SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
"""


class PostgresCacheStore:
    """Cache store on top of a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 2,
        max_age_seconds: Optional[float] = None,
        connection_config: Optional[Dict[str, Any]] = None,
    ) -> None:
        if min_size < 1 or max_size < 1 or min_size > max_size:
            raise ValueError("Pool size must be positive and min_size <= max_size.")
        if max_age_seconds is not None and max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive when set.")

        self._max_age = max_age_seconds
        self._pool = ConnectionPool(
            conninfo=dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs=connection_config or {},
        )
        LOGGER.debug("Initialized cache store pool min=%s max=%s", min_size, max_size)

    @contextmanager
    def connection(self) -> Generator[psycopg.Connection, None, None]:
        """Yield a pooled PostgreSQL connection."""
        with self._pool.connection() as conn:
            yield conn

    def ensure_schema(self) -> None:
        """Create the cache table when it does not exist yet."""
        with self.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(CREATE_TABLE_SQL)

    @perf("cache.get", tags={"component": "cache"}, level=logging.DEBUG)
    def get(self, key: str) -> Optional[Mapping[str, Any]]:
        if self._max_age is None:
            query, params = SELECT_SQL, {"key": key}
        else:
            query, params = SELECT_FRESH_SQL, {"key": key, "max_age": self._max_age}
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        if not row:
            return None
        return row["value"]

    @perf("cache.set", tags={"component": "cache"}, level=logging.DEBUG)
    def set(self, key: str, value: Mapping[str, Any]) -> None:
        with self.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(UPSERT_SQL, {"key": key, "value": Jsonb(dict(value))})

    def close(self) -> None:
        """Close the underlying connection pool."""
        LOGGER.debug("Closing cache store pool")
        self._pool.close()

    def __enter__(self) -> "PostgresCacheStore":
        return self

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()


__all__ = ["PostgresCacheStore"]
