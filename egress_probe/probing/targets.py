"""Probe targets and their declarative classification rules.

Targets are loaded from a JSON catalog (``data/targets.json`` by default)
because the marker strings drift whenever a probed service changes its
markup. The catalog shape::

    {
      "default_headers": {"User-Agent": "..."},
      "marker_sets": {"cloudflare_challenge": ["/cdn-cgi/challenge-platform", ...]},
      "verification_profiles": {"cloudflare": [{"name": ..., "url": ...}, ...]},
      "targets": {
        "gpt": {
          "url": "https://ios.chat.openai.com",
          "tag": "[GPT]",
          "rules": [{"verdict": "fail", "any_of": ["unsupported_country"]}, ...],
          "challenge_markers": "cloudflare_challenge",
          "verification": "cloudflare"
        }
      }
    }

Any list-of-markers field may name a ``marker_sets`` entry instead of
listing markers inline; ``verification`` may name a profile.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urljoin

from egress_probe.config import REPO_ROOT
from egress_probe.probing.models import VerdictKind

LOGGER = logging.getLogger(__name__)

DEFAULT_CATALOG = REPO_ROOT / "data" / "targets.json"
API_KEY_PLACEHOLDER = "{api_key}"
RULE_VERDICTS = (VerdictKind.PASS, VerdictKind.FAIL, VerdictKind.BLOCKED)


@dataclass(frozen=True)
class Rule:
    """One row of a rule table: a predicate over status and body, and its verdict.

    Empty ``statuses`` matches any status. Body predicates are plain substring
    tests: every ``all_of`` marker, at least one ``any_of`` marker (when
    given), and no ``none_of`` marker.
    """

    verdict: VerdictKind
    statuses: FrozenSet[int] = frozenset()
    all_of: Tuple[str, ...] = ()
    any_of: Tuple[str, ...] = ()
    none_of: Tuple[str, ...] = ()
    label: str = ""

    def matches(self, status: int, body: str) -> bool:
        if self.statuses and status not in self.statuses:
            return False
        if any(marker not in body for marker in self.all_of):
            return False
        if self.any_of and not any(marker in body for marker in self.any_of):
            return False
        return not any(marker in body for marker in self.none_of)

    def describe(self) -> str:
        return self.label or f"{self.verdict.value} rule"


@dataclass(frozen=True)
class VerificationStep:
    """A follow-up resource fetched during strong verification."""

    name: str
    url: str
    statuses: FrozenSet[int] = frozenset({200})
    min_length: int = 1
    all_of: Tuple[str, ...] = ()
    any_of: Tuple[str, ...] = ()

    def accepts(self, status: int, body: str) -> bool:
        if status not in self.statuses or len(body) < self.min_length:
            return False
        if any(marker not in body for marker in self.all_of):
            return False
        return not self.any_of or any(marker in body for marker in self.any_of)


@dataclass(frozen=True)
class ProbeTarget:
    """A named capability to test for, shared read-only by every probe."""

    name: str
    url: str
    tag: str
    headers: Mapping[str, str] = field(default_factory=dict)
    method: str = "GET"
    follow_redirects: bool = False
    rules: Tuple[Rule, ...] = ()
    challenge_markers: Tuple[str, ...] = ()
    verification: Tuple[VerificationStep, ...] = ()
    retry_statuses: FrozenSet[int] = frozenset()

    @property
    def flag(self) -> str:
        """Record key stem for capability flags, e.g. ``gemini_api``."""
        return self.name.replace("-", "_")

    @property
    def requires_api_key(self) -> bool:
        return API_KEY_PLACEHOLDER in self.url

    def resolve(self, url: str) -> str:
        """Absolute URL for a path relative to the target (verification steps)."""
        return urljoin(self.url, url)

    def is_challenge(self, body: str) -> bool:
        return any(marker in body for marker in self.challenge_markers)


def _markers(value: Any, marker_sets: Mapping[str, Sequence[str]], where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        if value not in marker_sets:
            raise ValueError(f"{where}: unknown marker set {value!r}")
        return tuple(marker_sets[value])
    return tuple(str(marker) for marker in value)


def _rule_from_dict(data: Mapping[str, Any], marker_sets: Mapping[str, Sequence[str]], where: str) -> Rule:
    try:
        verdict = VerdictKind(str(data["verdict"]).lower())
    except (KeyError, ValueError) as exc:
        raise ValueError(f"{where}: rule needs a verdict in {[v.value for v in RULE_VERDICTS]}") from exc
    if verdict not in RULE_VERDICTS:
        raise ValueError(f"{where}: rules may only yield pass/fail/blocked, got {verdict.value}")
    return Rule(
        verdict=verdict,
        statuses=frozenset(int(s) for s in data.get("statuses", ())),
        all_of=_markers(data.get("all_of"), marker_sets, where),
        any_of=_markers(data.get("any_of"), marker_sets, where),
        none_of=_markers(data.get("none_of"), marker_sets, where),
        label=str(data.get("label", "")),
    )


def _step_from_dict(data: Mapping[str, Any], marker_sets: Mapping[str, Sequence[str]], where: str) -> VerificationStep:
    if "name" not in data or "url" not in data:
        raise ValueError(f"{where}: verification step needs name and url")
    return VerificationStep(
        name=str(data["name"]),
        url=str(data["url"]),
        statuses=frozenset(int(s) for s in data.get("statuses", (200,))),
        min_length=int(data.get("min_length", 1)),
        all_of=_markers(data.get("all_of"), marker_sets, where),
        any_of=_markers(data.get("any_of"), marker_sets, where),
    )


def target_from_dict(
    name: str,
    data: Mapping[str, Any],
    *,
    default_headers: Optional[Mapping[str, str]] = None,
    marker_sets: Optional[Mapping[str, Sequence[str]]] = None,
    verification_profiles: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
) -> ProbeTarget:
    """Build a ``ProbeTarget`` from one catalog entry.

    Raises:
        ValueError: If the entry is missing ``url``/``tag`` or references an
            unknown marker set or verification profile.
    """
    marker_sets = marker_sets or {}
    verification_profiles = verification_profiles or {}
    where = f"target {name!r}"
    if not data.get("url") or not data.get("tag"):
        raise ValueError(f"{where}: url and tag are required")

    headers = dict(default_headers or {})
    headers.update(data.get("headers") or {})

    steps_raw = data.get("verification") or ()
    if isinstance(steps_raw, str):
        if steps_raw not in verification_profiles:
            raise ValueError(f"{where}: unknown verification profile {steps_raw!r}")
        steps_raw = verification_profiles[steps_raw]

    return ProbeTarget(
        name=name,
        url=str(data["url"]),
        tag=str(data["tag"]),
        headers=headers,
        method=str(data.get("method", "GET")).upper(),
        follow_redirects=bool(data.get("follow_redirects", False)),
        rules=tuple(_rule_from_dict(rule, marker_sets, where) for rule in data.get("rules", ())),
        challenge_markers=_markers(data.get("challenge_markers"), marker_sets, where),
        verification=tuple(_step_from_dict(step, marker_sets, where) for step in steps_raw),
        retry_statuses=frozenset(int(s) for s in data.get("retry_statuses", ())),
    )


def load_target_catalog(path: Optional[Path] = None) -> Dict[str, ProbeTarget]:
    """Load every target defined in the JSON catalog at ``path``."""
    catalog_path = path or DEFAULT_CATALOG
    if not catalog_path.exists():
        raise FileNotFoundError(f"Target catalog not found: {catalog_path}")

    raw = json.loads(catalog_path.read_text(encoding="utf-8"))
    targets = {
        name: target_from_dict(
            name,
            entry,
            default_headers=raw.get("default_headers"),
            marker_sets=raw.get("marker_sets"),
            verification_profiles=raw.get("verification_profiles"),
        )
        for name, entry in (raw.get("targets") or {}).items()
    }
    LOGGER.debug("Loaded %d targets from %s", len(targets), catalog_path)
    return targets


def select_targets(
    catalog: Mapping[str, ProbeTarget],
    names: Sequence[str],
    *,
    api_key: Optional[str] = None,
    tag_overrides: Optional[Mapping[str, str]] = None,
) -> List[ProbeTarget]:
    """Pick ``names`` from ``catalog`` in order, applying tags and the API key.

    Targets whose URL needs an API key are skipped with an error log when no
    key is configured.

    Raises:
        ValueError: If a name is not in the catalog.
    """
    tag_overrides = tag_overrides or {}
    selected: List[ProbeTarget] = []
    for name in names:
        if name not in catalog:
            raise ValueError(f"Unknown probe target {name!r}; known: {sorted(catalog)}")
        target = catalog[name]
        if target.requires_api_key:
            if not api_key:
                LOGGER.error("Skipping target %s: no API key configured (PROBE_API_KEY)", name)
                continue
            target = replace(target, url=target.url.replace(API_KEY_PLACEHOLDER, api_key))
        if name in tag_overrides:
            target = replace(target, tag=tag_overrides[name])
        selected.append(target)
    return selected


__all__ = [
    "DEFAULT_CATALOG",
    "ProbeTarget",
    "Rule",
    "VerificationStep",
    "load_target_catalog",
    "select_targets",
    "target_from_dict",
]
