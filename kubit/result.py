"""Results of executing plans."""

from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_LOG_LIMIT
from .diff import ObjectSetDiff
from .exceptions import ExecutionError, KubitException
from .manifest import NamedResource, ObjectRef
from .plan import RunMode
from .script import Script

__all__ = [
    "PhaseResult",
    "AttemptResult",
    "truncate_log",
]

_TRUNCATED = "[earlier output truncated by kubit]\n"


def truncate_log(output: str, limit: int) -> str:
    """Keep the tail of the output, which is where failures are reported."""
    if limit <= 0 or len(output) <= limit:
        return output
    return _TRUNCATED + output[-limit:]


@dataclass
class PhaseResult:
    """Exit status and captured output of one phase."""

    phase: str
    exit_code: int | None
    output: str = ""
    elapsed: float | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def error(self) -> ExecutionError:
        """The error reporting this phase verbatim."""
        return ExecutionError(self.phase, self.exit_code, self.output)


@dataclass
class AttemptResult:
    """Outcome of running a plan in one mode."""

    installation: NamedResource
    generation: int
    mode: RunMode
    digest: str | None = None

    phases: list[PhaseResult] = field(default_factory=list)
    """Phases that ran, in order. Phases after a failure are absent."""

    error: KubitException | None = None
    """Why the attempt failed, None on success."""

    manifests: list[dict[str, Any]] = field(default_factory=list)
    """Rendered objects, for render and diff modes."""

    script: Script | None = None
    """The script that would run, for script mode."""

    diff: ObjectSetDiff | None = None
    """Comparison against live state, for diff mode."""

    members: set[ObjectRef] = field(default_factory=set)
    """Members of the object set after a successful apply."""

    @property
    def success(self) -> bool:
        return self.error is None

    def phase(self, name: str) -> PhaseResult | None:
        for result in self.phases:
            if result.phase == name:
                return result
        return None

    def logs(self, limit: int = DEFAULT_LOG_LIMIT) -> dict[str, str]:
        """Captured output per phase, each bounded to `limit` characters."""
        logs = {
            result.phase: truncate_log(result.output, limit) for result in self.phases
        }
        if self.error is not None and not isinstance(self.error, ExecutionError):
            logs["error"] = truncate_log(str(self.error), limit)
        return logs
