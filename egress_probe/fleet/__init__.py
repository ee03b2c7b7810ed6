"""Fleet control API: leasing per-node local proxy endpoints."""

from egress_probe.fleet.lease import FleetLease, FleetLeaseManager, lease_duration_seconds

__all__ = ["FleetLease", "FleetLeaseManager", "lease_duration_seconds"]
