"""Network utilities for outbound probe traffic through leased proxies.

Exports:
- ``ProbeExecutor``: timeout/retry/redirect-aware requests per proxy endpoint.
- ``Observation``: the raw result handed to the classifier.
"""

from egress_probe.network.executor import REDIRECT_STATUSES, Observation, ProbeExecutor

__all__ = ["Observation", "ProbeExecutor", "REDIRECT_STATUSES"]
