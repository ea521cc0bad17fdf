"""Configuration for the kubit controller, resolver and runners.

Values are populated from command line flags by `kubit.tool` and otherwise
use the defaults here.
"""

from dataclasses import dataclass, field
from pathlib import Path

__all__ = [
    "ControllerConfig",
    "ResolverConfig",
    "RunnerConfig",
    "JobRunnerConfig",
]

# Field manager recorded for every object kubit applies
FIELD_MANAGER = "kubit-applier"

KUBECFG_REGISTRY = "ghcr.io/kubecfg/kubecfg/kubecfg"
DEFAULT_KUBECTL_IMAGE = "registry.k8s.io/kubectl:v1.30.0"

DEFAULT_LOG_LIMIT = 16 * 1024

# Retry delays stop growing after this many consecutive failures
MAX_BACKOFF_EXPONENT = 32


@dataclass
class ResolverConfig:
    """Configuration for resolving package artifacts."""

    workdir: Path | None = None
    """Parent directory for extracted packages, a temp dir when unset."""

    insecure: bool = False
    """Talk plain http to the registry, for local test registries."""

    skip_auth: bool = False
    """Ignore pull secrets and pull anonymously."""


@dataclass
class RunnerConfig:
    """Configuration shared by all runners."""

    kubecfg_bin: str = "kubecfg"
    kubectl_bin: str = "kubectl"

    impersonate: str | None = None
    """User to impersonate for apply, as with `kubectl --as`."""

    log_limit: int = DEFAULT_LOG_LIMIT
    """Maximum size of captured output kept per phase."""


@dataclass
class JobRunnerConfig(RunnerConfig):
    """Configuration for running attempts as in-cluster jobs."""

    kubecfg_image: str | None = None
    """Renderer image, derived from the package kubecfg version when unset."""

    kubectl_image: str = DEFAULT_KUBECTL_IMAGE

    service_account: str = "kubit-applier"
    """Service account whose credentials the apply container uses."""

    poll_interval: float = 2.0
    """Seconds between checks of the job status."""

    active_deadline: float | None = None
    """Seconds after which Kubernetes stops a job still running, if set."""


@dataclass
class ControllerConfig:
    """Configuration for the reconciliation controller."""

    namespace: str | None = None
    """Only watch installations in this namespace, all when unset."""

    paused_only: bool = False
    """Act only on paused installations instead of skipping them."""

    max_concurrent: int = 4
    """Maximum attempts running at the same time across installations."""

    attempt_timeout: float = 600.0
    """Wall clock limit in seconds for a single attempt."""

    backoff_initial: float = 5.0
    backoff_factor: float = 2.0
    backoff_max: float = 300.0

    resync_interval: float | None = 300.0
    """Seconds between periodic resyncs of every installation, None to disable."""

    resolver: ResolverConfig = field(default_factory=ResolverConfig)

    def backoff(self, failures: int) -> float:
        """Delay before the retry following `failures` consecutive failures."""
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, MAX_BACKOFF_EXPONENT)
        delay = self.backoff_initial * self.backoff_factor**exponent
        return min(delay, self.backoff_max)
