"""Run orchestration for probing batches of nodes."""

from egress_probe.jobs.runner import ProbeEngine, resolve_targets, run_probe_job

__all__ = ["ProbeEngine", "resolve_targets", "run_probe_job"]
