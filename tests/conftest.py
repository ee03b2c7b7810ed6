"""Shared pytest fixtures for the egress_probe tests.

Provides reusable fakes (psycopg pool, httpx mock transports) and
configuration objects so tests stay deterministic and never touch the
network or a real database.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import httpx
import pytest

from egress_probe.config import AppConfig, FleetSettings, ProbeSettings
from egress_probe.network import ProbeExecutor


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Application config fixture pointing logs at a temporary directory."""
    return AppConfig(log_directory=tmp_path, log_level="INFO")


@pytest.fixture
def probe_settings() -> ProbeSettings:
    """Fast settings: no startup wait, no retry delay."""
    return ProbeSettings(
        fleet=FleetSettings(host="127.0.0.1", port=9876, start_delay_seconds=0.0),
        request_timeout_seconds=1.0,
        retries=1,
        retry_delay_seconds=0.0,
        concurrency=4,
    )


@pytest.fixture
def raw_nodes() -> List[Dict[str, Any]]:
    return [
        {"name": "hk-01", "type": "ss", "server": "1.1.1.1", "port": 8388, "cipher": "aes-128-gcm"},
        {"name": "broken", "type": "ss", "server": "", "port": 8388},
        {"name": "jp-02", "type": "vmess", "server": "2.2.2.2", "port": "443", "uuid": "abc", "_gpt": False},
    ]


class Recorder:
    """Collects the requests a mock transport saw."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.endpoints: List[str] = []

    @property
    def urls(self) -> List[str]:
        return [str(request.url) for request in self.requests]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_executor(recorder: Recorder) -> Callable[..., ProbeExecutor]:
    """Build a ``ProbeExecutor`` whose clients answer via ``handler``.

    ``handler(request)`` returns an ``httpx.Response`` or raises an httpx
    transport exception; the proxy endpoint used is recorded too.
    """

    def factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> ProbeExecutor:
        def record(request: httpx.Request) -> httpx.Response:
            recorder.requests.append(request)
            return handler(request)

        def client_factory(endpoint: str) -> httpx.AsyncClient:
            recorder.endpoints.append(endpoint)
            return httpx.AsyncClient(transport=httpx.MockTransport(record), follow_redirects=False)

        async def no_sleep(_: float) -> None:
            return None

        kwargs.setdefault("sleep", no_sleep)
        kwargs.setdefault("retry_delay_seconds", 0.0)
        return ProbeExecutor(client_factory=client_factory, **kwargs)

    return factory


class FakeCursor:
    def __init__(self, row: Optional[Dict[str, Any]] = None) -> None:
        self.executed: List[Any] = []
        self.row = row
        self.row_factory = None

    def execute(self, query, params=None):
        self.executed.append((query, params))

    def fetchone(self):
        return self.row

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeTransaction:
    def __init__(self) -> None:
        self.entered = False
        self.exited = False

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.exited = True
        return False


class FakeConnection:
    def __init__(self) -> None:
        self.cursors: List[FakeCursor] = []
        self.transactions: List[FakeTransaction] = []
        self.next_row: Optional[Dict[str, Any]] = None

    def cursor(self, *_, **kwargs):
        cursor = FakeCursor(self.next_row)
        cursor.row_factory = kwargs.get("row_factory")
        self.cursors.append(cursor)
        return cursor

    def transaction(self):
        txn = FakeTransaction()
        self.transactions.append(txn)
        return txn


class FakePool:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.request_count = 0
        self.closed = False

    @contextmanager
    def connection(self) -> Generator[FakeConnection, None, None]:
        self.request_count += 1
        yield self.conn

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_conn: FakeConnection) -> FakePool:
    return FakePool(fake_conn)
