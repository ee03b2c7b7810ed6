"""egress-probe: tag proxy nodes with the gated services they can reach."""

__version__ = "0.1.0"
