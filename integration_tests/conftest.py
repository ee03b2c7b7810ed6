"""Fixtures for integration tests against a live fleet and PostgreSQL cache."""

import json
import uuid
from pathlib import Path
from typing import Any, Dict, Generator, List

import pytest
from psycopg import errors

from egress_probe.cache.postgres import PostgresCacheStore
from egress_probe.config import AppConfig, ProbeSettings, load_config, load_environment, load_probe_settings


@pytest.fixture(scope="session")
def probe_settings() -> ProbeSettings:
    if not load_environment().get("FLEET_HOST"):
        pytest.skip("FLEET_HOST must be configured in .env to run fleet integration tests.")
    return load_probe_settings()


@pytest.fixture(scope="session")
def live_nodes() -> List[Dict[str, Any]]:
    path = load_environment().get("INTEGRATION_NODES_FILE")
    if not path or not Path(path).exists():
        pytest.skip("INTEGRATION_NODES_FILE must point at a JSON array of real nodes.")
    return json.loads(Path(path).read_text(encoding="utf-8"))


@pytest.fixture(scope="session")
def app_config() -> AppConfig:
    config = load_config()
    if not config.cache_database_url:
        pytest.skip("CACHE_DATABASE_URL must be configured in .env to run cache integration tests.")
    return config


@pytest.fixture(scope="session")
def cache_store(app_config: AppConfig) -> Generator[PostgresCacheStore, None, None]:
    schema = f"int_{uuid.uuid4().hex[:8]}"
    admin = PostgresCacheStore(app_config.cache_database_url, min_size=1, max_size=1)
    try:
        with admin.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"CREATE SCHEMA IF NOT EXISTS {schema};")
    except errors.InsufficientPrivilege:
        admin.close()
        pytest.skip("Database user lacks privileges to create schemas for integration tests.")

    store = PostgresCacheStore(
        app_config.cache_database_url,
        connection_config={"options": f"-c search_path={schema}"},
    )
    store.ensure_schema()
    yield store
    store.close()
    with admin.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"DROP SCHEMA IF EXISTS {schema} CASCADE;")
    admin.close()
