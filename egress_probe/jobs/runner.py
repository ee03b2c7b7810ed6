"""Probe runner orchestrating lease, probing, classification and tagging.

One run:

1. converts the input nodes into descriptors (unusable ones are dropped);
2. leases one fleet endpoint per descriptor and waits the startup delay;
3. schedules one task per (node, target) under the concurrency ceiling,
   each doing cache lookup -> probe (with retries) -> classify -> cache
   write -> flag the node record;
4. tags node names, releases the lease and returns the caller's list.

The returned list is always the object that was passed in. Without usable
nodes, or when the fleet refuses a lease, it comes back untouched.
"""

import asyncio
import logging
from typing import Any, Dict, List, MutableMapping, Optional, Sequence

from egress_probe.cache import CacheStore, ResultCache
from egress_probe.config import ProbeSettings
from egress_probe.errors import LeaseAcquisitionError
from egress_probe.fleet import FleetLease, FleetLeaseManager, lease_duration_seconds
from egress_probe.logging_utils import ProgressLog, perf
from egress_probe.network import ProbeExecutor
from egress_probe.network.executor import SleepFunc
from egress_probe.nodes import NodeConverter, NodeDescriptor, build_descriptors, to_fleet_wire
from egress_probe.probing.aggregator import ResultAggregator
from egress_probe.probing.classifier import Classifier
from egress_probe.probing.models import Verdict
from egress_probe.probing.scheduler import ProbeScheduler
from egress_probe.probing.targets import ProbeTarget, load_target_catalog, select_targets

LOGGER = logging.getLogger(__name__)

NodeRecord = MutableMapping[str, Any]


class ProbeEngine:
    """Probe a batch of nodes against a fixed set of targets.

    Collaborators are injected so the engine runs without a live fleet:
    ``converter`` (node -> wire form), ``cache_store``, ``lease_manager``,
    ``executor`` (HTTP) and ``sleep`` (startup and retry waits).
    """

    def __init__(
        self,
        settings: ProbeSettings,
        targets: Sequence[ProbeTarget],
        *,
        converter: NodeConverter = to_fleet_wire,
        cache_store: Optional[CacheStore] = None,
        lease_manager: Optional[FleetLeaseManager] = None,
        executor: Optional[ProbeExecutor] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        if not targets:
            raise ValueError("at least one probe target is required")
        self._settings = settings.validate()
        self._targets = list(targets)
        self._converter = converter
        self._cache = ResultCache(
            cache_store,
            enabled=settings.cache_enabled,
            trust_failures=settings.trust_cached_failures,
        )
        self._owns_lease_manager = lease_manager is None
        self._lease_manager = lease_manager or FleetLeaseManager(settings.fleet)
        self._executor = executor
        self._sleep = sleep

    @perf("engine.run", tags={"component": "engine"})
    async def run(self, nodes: List[NodeRecord]) -> List[NodeRecord]:
        """Probe ``nodes`` and annotate them in place; returns ``nodes``."""
        descriptors = build_descriptors(nodes, self._converter)
        if not descriptors:
            LOGGER.warning("No usable nodes among %d inputs; nothing to probe", len(nodes))
            return nodes

        fleet = self._settings.fleet
        duration = lease_duration_seconds(
            fleet.start_delay_seconds,
            fleet.per_node_allowance_seconds,
            len(descriptors),
        )
        try:
            lease = await asyncio.to_thread(self._lease_manager.lease, descriptors, duration)
        except LeaseAcquisitionError as exc:
            LOGGER.error("Fleet lease failed; returning nodes untouched: %s", exc)
            return nodes

        executor = self._executor or ProbeExecutor.from_settings(self._settings, sleep=self._sleep)
        try:
            LOGGER.debug("Waiting %.1fs for fleet endpoints to come up", fleet.start_delay_seconds)
            await self._sleep(fleet.start_delay_seconds)
            await self._probe_all(nodes, descriptors, lease, executor)
        finally:
            try:
                if self._executor is None:
                    await executor.aclose()
            finally:
                await asyncio.to_thread(self._lease_manager.release, lease)
        return nodes

    async def _probe_all(
        self,
        nodes: List[NodeRecord],
        descriptors: Sequence[NodeDescriptor],
        lease: FleetLease,
        executor: ProbeExecutor,
    ) -> None:
        aggregator = ResultAggregator(nodes, self._targets)
        classifier = Classifier(executor)
        progress = ProgressLog(len(descriptors) * len(self._targets), logger=LOGGER)
        positions: Dict[int, int] = {node.index: pos for pos, node in enumerate(descriptors)}

        def task_for(target: ProbeTarget):
            async def probe_target(node: NodeDescriptor) -> None:
                endpoint = lease.endpoint_for(positions[node.index])
                verdict = await self.probe_one(node, target, endpoint, executor, classifier)
                aggregator.apply(node, target, verdict)
                progress.tick(verdict.passed)

            probe_target.__name__ = f"probe_{target.flag}"
            return probe_target

        scheduler: ProbeScheduler[NodeDescriptor] = ProbeScheduler(self._settings.concurrency)
        report = await scheduler.run(descriptors, [task_for(target) for target in self._targets])
        renamed = aggregator.finalize()

        LOGGER.info(
            "Run summary: pid=%s nodes=%d tasks=%d failed_tasks=%d renamed=%d passed=%s",
            lease.process_id,
            len(descriptors),
            report.total,
            report.failed,
            renamed,
            aggregator.summary(),
        )

    async def probe_one(
        self,
        node: NodeDescriptor,
        target: ProbeTarget,
        endpoint: str,
        executor: ProbeExecutor,
        classifier: Classifier,
    ) -> Verdict:
        """Cache lookup, live probe and classification for one (node, target)."""
        cached = self._cache.lookup(node, target)
        if cached is not None:
            LOGGER.debug("%s %s -> %s (cache)", node.name, target.name, cached.kind.value)
            return cached

        observation = await executor.probe(endpoint, target)
        verdict = await classifier.classify(observation, target, endpoint)
        self._cache.record(node, target, verdict)
        LOGGER.debug(
            "%s %s -> %s (%s, attempts=%d)",
            node.name,
            target.name,
            verdict.kind.value,
            verdict.detail,
            observation.attempts,
        )
        return verdict

    def close(self) -> None:
        if self._owns_lease_manager:
            self._lease_manager.close()


def resolve_targets(settings: ProbeSettings) -> List[ProbeTarget]:
    """Targets selected by ``settings`` from the configured catalog."""
    catalog = load_target_catalog(settings.targets_file)
    return select_targets(
        catalog,
        settings.targets,
        api_key=settings.api_key,
        tag_overrides=settings.tag_overrides,
    )


def run_probe_job(
    nodes: List[NodeRecord],
    settings: ProbeSettings,
    *,
    targets: Optional[Sequence[ProbeTarget]] = None,
    cache_store: Optional[CacheStore] = None,
    converter: NodeConverter = to_fleet_wire,
) -> List[NodeRecord]:
    """Synchronous entry point: run one probing pass over ``nodes``."""
    selected = list(targets) if targets is not None else resolve_targets(settings)
    if not selected:
        LOGGER.warning("No probe targets available; returning nodes untouched")
        return nodes

    engine = ProbeEngine(settings, selected, converter=converter, cache_store=cache_store)
    try:
        return asyncio.run(engine.run(nodes))
    finally:
        engine.close()


__all__ = ["ProbeEngine", "resolve_targets", "run_probe_job"]
