"""Installation controller module.

This module provides the InstallationController, which reconciles
installations from the store into the cluster and records the resulting
object sets as artifacts.
"""

from .controller import InstallationController
from .artifact import ObjectSetArtifact
from .record import AttemptRecord, AttemptState

__all__ = [
    "InstallationController",
    "ObjectSetArtifact",
    "AttemptRecord",
    "AttemptState",
]
