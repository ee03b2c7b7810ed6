"""Write passing verdicts back onto the caller's node records.

Flags are set as verdicts arrive; each probe task touches only the record at
its own node index. Name tags are inserted once at the end of the run, in
target order, so the resulting names do not depend on completion order.
"""

import logging
from typing import Any, Dict, List, MutableMapping, MutableSequence, Sequence, Set

from egress_probe.nodes import NodeDescriptor
from egress_probe.probing.models import Verdict
from egress_probe.probing.targets import ProbeTarget

LOGGER = logging.getLogger(__name__)


class ResultAggregator:
    """Collect verdicts for one run and annotate the original node records."""

    def __init__(
        self,
        records: MutableSequence[MutableMapping[str, Any]],
        targets: Sequence[ProbeTarget],
        *,
        name_key: str = "name",
    ) -> None:
        self._records = records
        self._targets = list(targets)
        self._name_key = name_key
        self._passed: Dict[int, Set[str]] = {}

    def apply(self, node: NodeDescriptor, target: ProbeTarget, verdict: Verdict) -> bool:
        """Record ``verdict``; returns True when it set a capability flag."""
        if not verdict.passed:
            return False
        record = self._records[node.index]
        record[f"_{target.flag}"] = True
        if verdict.latency_ms is not None:
            record[f"_{target.flag}_latency"] = round(verdict.latency_ms)
        self._passed.setdefault(node.index, set()).add(target.name)
        return True

    def finalize(self) -> int:
        """Prefix tags of passing targets to node names; returns records renamed.

        Tags already present in a name are skipped, so re-running over an
        annotated list leaves names unchanged.
        """
        renamed = 0
        for index, passed in sorted(self._passed.items()):
            record = self._records[index]
            name = str(record.get(self._name_key) or "")
            tags: List[str] = []
            for target in self._targets:
                if target.name in passed and target.tag not in name and target.tag not in tags:
                    tags.append(target.tag)
            if tags:
                record[self._name_key] = " ".join(tags + ([name] if name else []))
                renamed += 1
        return renamed

    def summary(self) -> Dict[str, int]:
        """Number of passing nodes per target name."""
        counts = {target.name: 0 for target in self._targets}
        for passed in self._passed.values():
            for name in passed:
                counts[name] = counts.get(name, 0) + 1
        return counts


__all__ = ["ResultAggregator"]
