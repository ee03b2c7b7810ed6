"""Turn raw observations into capability verdicts.

Status codes alone do not tell reachable from blocked: gated services answer
200 to both authorized and unauthorized visitors, and challenge pages answer
403/503 to blocked and merely unverified traffic alike. Evidence is layered:

1. transport errors become ``NETWORK_ERROR``;
2. the target's rule table is evaluated top to bottom, first match wins
   (region-block signatures, explicit block pages, positive structural
   markers, then bare status rules, in whatever order the catalog lists them);
3. an unmatched challenge page triggers strong verification, which fetches
   every verification resource through the same endpoint and passes only
   when all of them look right;
4. anything else is ambiguous and never counts as a pass.
"""

import asyncio
import logging
from typing import Optional

from egress_probe.errors import ClassificationAmbiguous
from egress_probe.network.executor import Observation, ProbeExecutor
from egress_probe.probing.models import Verdict, VerdictKind
from egress_probe.probing.targets import ProbeTarget, Rule

LOGGER = logging.getLogger(__name__)


def match_rule(observation: Observation, target: ProbeTarget) -> Optional[Rule]:
    """Return the first rule of ``target`` matching ``observation``, if any."""
    for rule in target.rules:
        if rule.matches(observation.status, observation.body):
            return rule
    return None


def evaluate(observation: Observation, target: ProbeTarget) -> Verdict:
    """Classify using transport state and the rule table only.

    Deterministic: the same observation always yields the same verdict.

    Raises:
        ClassificationAmbiguous: If no rule matches.
    """
    if observation.failed:
        return Verdict(VerdictKind.NETWORK_ERROR, detail=observation.error or "", latency_ms=observation.latency_ms)

    rule = match_rule(observation, target)
    if rule is None:
        raise ClassificationAmbiguous(f"{target.name}: no rule matched status {observation.status}")
    return Verdict(
        rule.verdict,
        detail=f"{rule.describe()} (status {observation.status})",
        latency_ms=observation.latency_ms,
    )


class Classifier:
    """Rule-table classifier with optional strong verification of challenge pages."""

    def __init__(self, executor: Optional[ProbeExecutor] = None) -> None:
        """Initialize the classifier.

        Args:
            executor: Used to fetch verification resources. Without it,
                challenge pages are classified ``FAIL``.
        """
        self._executor = executor

    async def classify(
        self,
        observation: Observation,
        target: ProbeTarget,
        endpoint: Optional[str] = None,
    ) -> Verdict:
        """Produce the verdict for ``observation`` of ``target``.

        ``endpoint`` is the proxy the observation was made through; strong
        verification reuses it.
        """
        try:
            return evaluate(observation, target)
        except ClassificationAmbiguous as exc:
            if target.is_challenge(observation.body):
                return await self._strong_verify(observation, target, endpoint)
            return self._ambiguous(observation, target, exc)

    @staticmethod
    def _ambiguous(observation: Observation, target: ProbeTarget, exc: ClassificationAmbiguous) -> Verdict:
        # Transient statuses and unfinished redirect chains say nothing either way.
        if observation.status in target.retry_statuses or observation.is_redirect:
            kind = VerdictKind.INDETERMINATE
        else:
            kind = VerdictKind.FAIL
        return Verdict(kind, detail=str(exc), latency_ms=observation.latency_ms)

    async def _strong_verify(
        self,
        observation: Observation,
        target: ProbeTarget,
        endpoint: Optional[str],
    ) -> Verdict:
        if not target.verification or self._executor is None or endpoint is None:
            return Verdict(
                VerdictKind.FAIL,
                detail=f"challenge page (status {observation.status}), no strong verification",
                latency_ms=observation.latency_ms,
            )

        results = await asyncio.gather(
            *(
                self._executor.fetch(
                    endpoint,
                    target.resolve(step.url),
                    headers=target.headers,
                    follow_redirects=False,
                )
                for step in target.verification
            )
        )
        rejected = [
            f"{step.name}={result.status or result.error}"
            for step, result in zip(target.verification, results)
            if not step.accepts(result.status, result.body)
        ]
        if rejected:
            LOGGER.debug("strong verification of %s via %s failed: %s", target.name, endpoint, rejected)
            return Verdict(
                VerdictKind.FAIL,
                detail="challenge page; strong verification failed: " + ", ".join(rejected),
                latency_ms=observation.latency_ms,
            )
        return Verdict(
            VerdictKind.STRONG_PASS,
            detail="challenge page; strong verification passed: "
            + ", ".join(step.name for step in target.verification),
            latency_ms=observation.latency_ms,
        )


__all__ = ["Classifier", "evaluate", "match_rule"]
