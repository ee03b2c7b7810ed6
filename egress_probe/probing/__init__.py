"""Probe targets, classification, scheduling and result aggregation.

Import from the submodules directly; ``network.executor`` depends on
``probing.targets``, so this package does not re-export anything.
"""
