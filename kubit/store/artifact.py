"""Artifact representation."""

from abc import ABC
from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class Artifact(ABC):
    """Base class for results a controller publishes for an installation.

    An artifact is written after a successful reconciliation and describes
    what the controller produced, e.g. the members of an object set.
    """
