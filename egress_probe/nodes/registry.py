"""Normalize raw node descriptions into fleet-ready descriptors.

Each accepted node keeps the position it had in the caller's list (``index``)
so verdicts can be written back to the right record later. Nodes the
converter cannot translate are dropped with a warning, never raised.
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

LOGGER = logging.getLogger(__name__)

NodeConverter = Callable[[Mapping[str, Any]], Optional[Dict[str, Any]]]

# Identity and bookkeeping keys never take part in a fingerprint, so renaming
# a node or re-tagging it keeps its cache entries valid.
_FINGERPRINT_EXCLUDED = re.compile(r"^(name|collectionName|subName|id|_.*)$", re.IGNORECASE)
FINGERPRINT_PREFIX = "egress-probe:check:"


def _is_internal(key: str) -> bool:
    return key.startswith("_")


def to_fleet_wire(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Default converter: validate a Clash-style node and return its wire form.

    Requires non-empty ``type`` and ``server`` and a ``port`` within 1..65535.
    Underscore-prefixed keys are stripped; they travel separately as carried
    fields on the descriptor.

    Raises:
        ValueError: If the node is missing or has invalid connection fields.
    """
    if not isinstance(raw, Mapping):
        raise ValueError(f"node must be a mapping, got {type(raw).__name__}")

    node_type = str(raw.get("type") or "").strip()
    server = str(raw.get("server") or "").strip()
    if not node_type or not server:
        raise ValueError("node requires non-empty 'type' and 'server'")

    try:
        port = int(raw.get("port"))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid port {raw.get('port')!r}") from exc
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")

    wire = {key: value for key, value in raw.items() if not _is_internal(str(key))}
    wire["type"] = node_type
    wire["server"] = server
    wire["port"] = port
    return wire


@dataclass(frozen=True)
class NodeDescriptor:
    """One accepted node.

    Attributes:
        index: Position of the node in the caller's original list.
        wire: Fleet wire form produced by the converter (read-only).
        carried: Underscore-prefixed fields copied from the input node, such
            as capability flags recorded by earlier runs (read-only).
    """

    index: int
    wire: Mapping[str, Any]
    carried: Mapping[str, Any]

    @property
    def name(self) -> str:
        return str(self.wire.get("name", f"node-{self.index}"))

    def to_wire(self) -> Dict[str, Any]:
        """Payload entry sent to the fleet ``/start`` call."""
        payload = dict(self.wire)
        payload.update(self.carried)
        payload["_proxies_index"] = self.index
        return payload

    def stable_config(self) -> Dict[str, Any]:
        """Connection fields that define the node, minus identity/cosmetic keys."""
        return {
            key: value
            for key, value in self.wire.items()
            if not _FINGERPRINT_EXCLUDED.match(str(key))
        }

    def fingerprint(self, url: str) -> str:
        """Cache key for probing ``url`` through this node."""
        canonical = json.dumps(self.stable_config(), sort_keys=True, default=str, separators=(",", ":"))
        digest = hashlib.sha256(f"{url}\n{canonical}".encode("utf-8")).hexdigest()
        return f"{FINGERPRINT_PREFIX}{digest}"


def build_descriptors(
    raw_nodes: Sequence[Mapping[str, Any]],
    converter: NodeConverter = to_fleet_wire,
) -> List[NodeDescriptor]:
    """Convert ``raw_nodes`` into descriptors, dropping untranslatable ones.

    Args:
        raw_nodes: Node descriptions in caller order.
        converter: Callable turning one description into its fleet wire form;
            raising or returning ``None`` drops the node.

    Returns:
        Descriptors in input order, each carrying its original ``index``.
    """
    descriptors: List[NodeDescriptor] = []
    for index, raw in enumerate(raw_nodes):
        try:
            wire = converter(raw)
        except Exception as exc:  # noqa: BLE001 - converter is caller-supplied
            LOGGER.warning("Dropping node #%d (%s): %s", index, _display_name(raw), exc)
            continue
        if not wire:
            LOGGER.warning("Dropping node #%d (%s): converter returned nothing", index, _display_name(raw))
            continue

        carried = {
            key: value
            for key, value in raw.items()
            if _is_internal(str(key))
        }
        descriptors.append(
            NodeDescriptor(
                index=index,
                wire=MappingProxyType(dict(wire)),
                carried=MappingProxyType(carried),
            )
        )

    LOGGER.info("Accepted %d of %d nodes", len(descriptors), len(raw_nodes))
    return descriptors


def _display_name(raw: Any) -> str:
    if isinstance(raw, Mapping):
        return str(raw.get("name", "?"))
    return "?"


__all__ = [
    "FINGERPRINT_PREFIX",
    "NodeConverter",
    "NodeDescriptor",
    "build_descriptors",
    "to_fleet_wire",
]
