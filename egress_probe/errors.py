"""Exception types raised inside the probing engine.

Only ``LeaseAcquisitionError`` ever ends a run early; everything else is
contained within the probe that raised it and turned into a verdict.
"""

from typing import Optional


class ProbeEngineError(Exception):
    """Base class for probing engine failures."""


class LeaseAcquisitionError(ProbeEngineError):
    """The fleet process did not hand out a usable lease."""


class LeaseReleaseError(ProbeEngineError):
    """Stopping the fleet process failed; callers log and ignore it."""


class TransportError(ProbeEngineError):
    """A single HTTP attempt failed below the HTTP layer (timeout, refused, TLS)."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class ClassificationAmbiguous(ProbeEngineError):
    """No rule of the target's rule table matched an observation."""


__all__ = [
    "ProbeEngineError",
    "LeaseAcquisitionError",
    "LeaseReleaseError",
    "TransportError",
    "ClassificationAmbiguous",
]
