"""Verdict types shared by the classifier, cache and aggregator."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class VerdictKind(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    BLOCKED = "blocked"
    STRONG_PASS = "strong_pass"
    INDETERMINATE = "indeterminate"
    NETWORK_ERROR = "network_error"


PASSING_KINDS = frozenset({VerdictKind.PASS, VerdictKind.STRONG_PASS})


@dataclass(frozen=True)
class Verdict:
    """Outcome of probing one target through one node.

    Attributes:
        kind: The classification result.
        detail: Human-readable reason, e.g. the rule that matched.
        latency_ms: Latency of the primary request, when one was made.
        cached: True when the verdict came from the result cache.
    """

    kind: VerdictKind
    detail: str = ""
    latency_ms: Optional[float] = None
    cached: bool = False

    @property
    def passed(self) -> bool:
        return self.kind in PASSING_KINDS


__all__ = ["PASSING_KINDS", "Verdict", "VerdictKind"]
