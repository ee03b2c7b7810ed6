"""Node registry: raw node descriptions to fleet-ready descriptors."""

from egress_probe.nodes.registry import (
    NodeConverter,
    NodeDescriptor,
    build_descriptors,
    to_fleet_wire,
)

__all__ = [
    "NodeConverter",
    "NodeDescriptor",
    "build_descriptors",
    "to_fleet_wire",
]
