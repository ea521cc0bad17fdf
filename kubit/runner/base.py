"""Runner interface."""

from abc import ABC, abstractmethod

from kubit.plan import ExecutionPlan, RunMode, UninstallStep
from kubit.result import AttemptResult, PhaseResult

__all__ = [
    "Runner",
]


class Runner(ABC):
    """Executes plans, either in process or as in-cluster jobs."""

    @abstractmethod
    async def run(self, plan: ExecutionPlan, mode: RunMode) -> AttemptResult:
        """Execute the plan in the given mode.

        Phase failures are reported in the result rather than raised. Modes
        other than apply never mutate the cluster.
        """

    @abstractmethod
    async def uninstall(self, step: UninstallStep) -> PhaseResult:
        """Remove every member of the object set and the set bookkeeping."""
