"""Issue probe requests through fleet-leased proxy endpoints.

Each leased endpoint gets its own ``httpx.AsyncClient`` configured with that
endpoint as its proxy and automatic redirects disabled; redirects are followed
here, hop by hop, only when a target asks for it. That keeps the literal
first-hop response visible to the classifier for targets that need it.

Transport failures never escape ``probe``/``fetch``: they come back as an
``Observation`` with ``status == 0`` and ``error`` set.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from egress_probe.config import ProbeSettings
from egress_probe.errors import TransportError
from egress_probe.probing.targets import ProbeTarget

LOGGER = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

ClientFactory = Callable[[str], httpx.AsyncClient]
SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Observation:
    """Raw result of one probe (after redirects and retries).

    Attributes:
        status: Final HTTP status, or 0 on transport failure.
        latency_ms: Wall time of the last attempt, redirects included.
        url: URL of the final response (or the one that failed).
        headers: Response headers of the final response.
        body: Decoded response body.
        error: Transport failure description, None on success.
        redirects: URLs visited after the first request.
        attempts: Number of attempts made, retries included.
    """

    status: int
    latency_ms: float
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""
    error: Optional[str] = None
    redirects: Tuple[str, ...] = ()
    attempts: int = 1

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def is_redirect(self) -> bool:
        return self.status in REDIRECT_STATUSES


def _elapsed_ms(start_ns: int) -> float:
    return (time.perf_counter_ns() - start_ns) / 1_000_000.0


class ProbeExecutor:
    """Send probe requests with timeout, retries and bounded redirects."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        retries: int = 1,
        retry_delay_seconds: float = 1.0,
        backoff: str = "fixed",
        max_redirects: int = 5,
        client_factory: Optional[ClientFactory] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            timeout_seconds: Upper bound on one attempt, redirect hops and
                body read included. Also the per-phase httpx timeout.
            retries: Extra attempts after a failed one.
            retry_delay_seconds: Base wait before a retry.
            backoff: ``fixed`` waits the base delay every time, ``linear``
                waits ``base * attempt``.
            max_redirects: Hop bound when a target follows redirects.
            client_factory: Builds the client for one proxy endpoint URL;
                defaults to an ``httpx.AsyncClient`` proxied through it.
            sleep: Awaitable used for retry delays.
        """
        if retries < 0 or max_redirects < 0:
            raise ValueError("retries and max_redirects must be >= 0")
        self._timeout = timeout_seconds
        self._retries = retries
        self._retry_delay = retry_delay_seconds
        self._backoff = backoff
        self._max_redirects = max_redirects
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._clients: Dict[str, httpx.AsyncClient] = {}

    @classmethod
    def from_settings(cls, settings: ProbeSettings, **kwargs) -> "ProbeExecutor":
        return cls(
            timeout_seconds=settings.request_timeout_seconds,
            retries=settings.retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            backoff=settings.retry_backoff,
            max_redirects=settings.max_redirects,
            **kwargs,
        )

    def _default_client(self, endpoint: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            proxy=endpoint,
            timeout=httpx.Timeout(self._timeout),
            follow_redirects=False,
        )

    def _client(self, endpoint: str) -> httpx.AsyncClient:
        client = self._clients.get(endpoint)
        if client is None:
            client = self._client_factory(endpoint)
            self._clients[endpoint] = client
        return client

    def retry_delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""
        if self._backoff == "linear":
            return self._retry_delay * attempt
        return self._retry_delay

    @staticmethod
    async def _send(
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Mapping[str, str],
    ) -> httpx.Response:
        try:
            return await client.request(method, url, headers=dict(headers))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}", url=url) from exc

    async def fetch(
        self,
        endpoint: str,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        follow_redirects: bool = False,
    ) -> Observation:
        """Make a single attempt, following redirects when asked.

        A redirect chain longer than ``max_redirects`` (including cycles)
        stops at the bound and the last 3xx response is returned. The whole
        attempt shares one ``timeout_seconds`` deadline.
        """
        client = self._client(endpoint)
        headers = headers or {}
        hops: List[str] = []
        current_url = url
        current_method = method
        start_ns = time.perf_counter_ns()
        try:
            async with asyncio.timeout(self._timeout):
                response = await self._send(client, current_method, current_url, headers)
                while (
                    follow_redirects
                    and response.status_code in REDIRECT_STATUSES
                    and len(hops) < self._max_redirects
                ):
                    location = response.headers.get("location")
                    if not location:
                        break
                    current_url = str(response.url.join(location))
                    if response.status_code == 303 or (
                        response.status_code in (301, 302) and current_method == "POST"
                    ):
                        current_method = "GET"
                    hops.append(current_url)
                    response = await self._send(client, current_method, current_url, headers)
        except TransportError as exc:
            return Observation(
                status=0,
                latency_ms=_elapsed_ms(start_ns),
                url=exc.url or current_url,
                error=str(exc),
                redirects=tuple(hops),
            )
        except TimeoutError:
            return Observation(
                status=0,
                latency_ms=_elapsed_ms(start_ns),
                url=current_url,
                error=f"TimeoutError: attempt exceeded {self._timeout:g}s",
                redirects=tuple(hops),
            )

        return Observation(
            status=response.status_code,
            latency_ms=_elapsed_ms(start_ns),
            url=str(response.url),
            headers=dict(response.headers),
            body=response.text,
            redirects=tuple(hops),
        )

    @staticmethod
    def _should_retry(observation: Observation, target: ProbeTarget) -> bool:
        return observation.failed or observation.status in target.retry_statuses

    async def probe(self, endpoint: str, target: ProbeTarget) -> Observation:
        """Probe ``target`` through ``endpoint`` with the retry policy applied.

        Attempts are strictly sequential. Returns the observation of the
        first acceptable attempt or of the last one.
        """
        total_attempts = self._retries + 1
        for attempt in range(1, total_attempts + 1):
            observation = await self.fetch(
                endpoint,
                target.url,
                method=target.method,
                headers=target.headers,
                follow_redirects=target.follow_redirects,
            )
            if attempt == total_attempts or not self._should_retry(observation, target):
                return replace(observation, attempts=attempt)

            delay = self.retry_delay(attempt)
            LOGGER.debug(
                "probe %s via %s attempt %d/%d failed (status=%s error=%s); retrying in %.2fs",
                target.name,
                endpoint,
                attempt,
                total_attempts,
                observation.status,
                observation.error,
                delay,
            )
            await self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover

    async def aclose(self) -> None:
        """Close every per-endpoint client."""
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.aclose()

    async def __aenter__(self) -> "ProbeExecutor":
        return self

    async def __aexit__(self, exc_type, exc, exc_tb) -> None:
        await self.aclose()


__all__ = ["Observation", "ProbeExecutor", "REDIRECT_STATUSES"]
