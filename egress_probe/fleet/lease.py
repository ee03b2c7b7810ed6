"""Client for the fleet control API that exposes one local proxy per node.

The fleet process is started with ``POST /start`` carrying every accepted
node and a lifetime in milliseconds; it answers with its pid and one local
port per node, in the same order. ``POST /stop`` ends it early. The process
expires on its own once the lifetime elapses, so stopping is best effort.

Notes:
- Size the lease generously. Endpoints disappearing mid-run turn the
  remaining probes into network errors; they do not fail the run.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import requests

from egress_probe.config import FleetSettings
from egress_probe.errors import LeaseAcquisitionError, LeaseReleaseError
from egress_probe.logging_utils import perf
from egress_probe.nodes import NodeDescriptor

LOGGER = logging.getLogger(__name__)


def lease_duration_seconds(start_delay: float, per_node_allowance: float, node_count: int) -> float:
    """Conservative upper bound on how long a run needs its endpoints."""
    return start_delay + per_node_allowance * node_count


@dataclass(frozen=True)
class FleetLease:
    """Endpoints granted by one fleet process.

    Attributes:
        process_id: Fleet process id, needed to stop it.
        endpoints: Proxy URLs aligned with the leased descriptors.
        expires_after_seconds: Lifetime requested for the process.
    """

    process_id: Any
    endpoints: Tuple[str, ...]
    expires_after_seconds: float

    def endpoint_for(self, position: int) -> str:
        return self.endpoints[position]


def _decode_body(text: str) -> Dict[str, Any]:
    """Decode the ``/start`` response, which may be JSON embedded in a JSON string."""
    try:
        body: Any = json.loads(text)
        if isinstance(body, str):
            body = json.loads(body)
    except ValueError as exc:
        raise LeaseAcquisitionError(f"fleet returned a non-JSON body: {text[:200]!r}") from exc
    if not isinstance(body, dict):
        raise LeaseAcquisitionError(f"fleet returned an unexpected body: {text[:200]!r}")
    return body


class FleetLeaseManager:
    """Acquire and release fleet leases over the control API."""

    def __init__(
        self,
        settings: FleetSettings,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize the manager.

        Args:
            settings: Fleet host/port/protocol/credential and timeouts.
            session: Optional pre-configured Requests session.
        """
        self._settings = settings
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.authorization:
            headers["Authorization"] = self._settings.authorization
        return headers

    @perf("fleet.lease", tags={"component": "fleet"})
    def lease(self, nodes: Sequence[NodeDescriptor], duration_seconds: float) -> FleetLease:
        """Start a fleet process for ``nodes`` and return its endpoints.

        Raises:
            LeaseAcquisitionError: On transport/HTTP failure, an undecodable
                body, a missing ``pid``/``ports``, or a port count that does
                not match ``nodes``.
        """
        if not nodes:
            raise ValueError("nodes must not be empty")

        payload = {
            "proxies": [node.to_wire() for node in nodes],
            "timeout": int(duration_seconds * 1000),
        }
        url = f"{self._settings.api_base}/start"
        try:
            response = self._session.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self._settings.start_timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise LeaseAcquisitionError(f"fleet start failed: {exc}") from exc

        body = _decode_body(response.text)
        pid = body.get("pid")
        ports = body.get("ports")
        if not pid:
            raise LeaseAcquisitionError(f"fleet start response lacks pid: {body}")

        try:
            endpoints = self._endpoints(ports, len(nodes))
        except LeaseAcquisitionError:
            self._abandon(pid, duration_seconds)
            raise

        lease = FleetLease(
            process_id=pid,
            endpoints=endpoints,
            expires_after_seconds=duration_seconds,
        )
        LOGGER.info(
            "Fleet started pid=%s nodes=%d lease=%.0fs",
            pid,
            len(nodes),
            duration_seconds,
        )
        return lease

    def _endpoints(self, ports: Any, node_count: int) -> Tuple[str, ...]:
        if not isinstance(ports, list) or len(ports) != node_count:
            count = len(ports) if isinstance(ports, list) else repr(ports)
            raise LeaseAcquisitionError(f"fleet returned {count} ports for {node_count} nodes")
        try:
            return tuple(self._settings.endpoint_url(int(port)) for port in ports)
        except (TypeError, ValueError) as exc:
            raise LeaseAcquisitionError(f"fleet returned invalid ports: {ports!r}") from exc

    def _abandon(self, pid: Any, duration_seconds: float) -> None:
        """Stop a process whose start response could not be used."""
        try:
            self._stop(FleetLease(process_id=pid, endpoints=(), expires_after_seconds=duration_seconds))
        except LeaseReleaseError as exc:
            LOGGER.warning("%s (process expires on its own)", exc)

    def _stop(self, lease: FleetLease) -> None:
        url = f"{self._settings.api_base}/stop"
        try:
            response = self._session.post(
                url,
                json={"pid": [lease.process_id]},
                headers=self._headers(),
                timeout=self._settings.stop_timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise LeaseReleaseError(f"fleet stop failed for pid={lease.process_id}: {exc}") from exc

    def release(self, lease: FleetLease) -> bool:
        """Stop the fleet process; failures are logged and ignored.

        Returns True when the fleet acknowledged the stop.
        """
        try:
            self._stop(lease)
        except LeaseReleaseError as exc:
            LOGGER.warning("%s (process expires on its own)", exc)
            return False
        LOGGER.info("Fleet stopped pid=%s", lease.process_id)
        return True

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "FleetLeaseManager":
        return self

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()


__all__ = ["FleetLease", "FleetLeaseManager", "lease_duration_seconds"]
