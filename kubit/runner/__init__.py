"""Execution of plans.

`LocalRunner` runs the renderer and applier in process and supports every
mode. `JobRunner` runs each attempt as an ephemeral Kubernetes Job with the
render phase as an init container and the apply phase as the main container.
"""

from kubit.plan import RunMode
from kubit.result import AttemptResult, PhaseResult

from .base import Runner
from .local import LocalRunner
from .job import JobRunner

__all__ = [
    "Runner",
    "RunMode",
    "AttemptResult",
    "PhaseResult",
    "LocalRunner",
    "JobRunner",
]
