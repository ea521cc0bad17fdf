"""Execution plans for reconciliation attempts.

A plan describes the two phases of an attempt without running anything:

- render: the renderer evaluates the package entry template with the
  installation as an overlay and writes one file per object into a manifest
  directory.
- apply: `kubectl apply --applyset` applies that directory, labelling every
  object as a member of the installation's object set and pruning members
  that are no longer rendered.

Plans never carry credentials. Runners provide `KUBECONFIG` and
`DOCKER_CONFIG` in the environment when executing them, so a plan can always
be printed as a script for inspection.
"""

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
from pathlib import Path
from typing import Any

from .config import FIELD_MANAGER, RunnerConfig
from .docker_config import DockerConfig
from .exceptions import PlanError
from .manifest import Installation, NamedResource
from .objectset import PART_OF_LABEL, ObjectSet
from .package import ResolvedPackage
from .script import Script, quote

__all__ = [
    "RunMode",
    "RenderStep",
    "ApplyStep",
    "UninstallStep",
    "ExecutionPlan",
    "synthesize",
    "uninstall_step",
]

_LOGGER = logging.getLogger(__name__)

RENDER_PHASE = "render"
APPLY_PHASE = "apply"
DIFF_PHASE = "diff"
UNINSTALL_PHASE = "uninstall"

OVERLAY_VAR = "appInstance_"
OVERLAY_FILENAME = "overlay.json"
MANIFESTS_DIR = "manifests"

# Files are prefixed with the resource index so that name order is the order
# the renderer emitted them in.
EXPORT_FILENAME_FORMAT = (
    '{{printf "%03d" (resourceIndex .)}}-{{.apiVersion}}.{{.kind}}'
    '-{{default "default" .metadata.namespace}}.{{.metadata.name}}'
)

APPLYSET_ENV = {"KUBECTL_APPLYSET": "true"}


class RunMode(str, Enum):
    """How a runner executes a plan."""

    APPLY = "apply"
    """Render, then apply to the cluster."""

    RENDER = "render"
    """Render only and return the manifests."""

    SCRIPT = "script"
    """Return the script that would run, executing nothing."""

    DIFF = "diff"
    """Render, then diff against the live object set."""

    @property
    def mutates(self) -> bool:
        return self is RunMode.APPLY


@dataclass(frozen=True)
class RenderStep:
    """Evaluate the entry template into a manifest directory."""

    entrypoint: str
    """Local path of the entry template or a digest pinned `oci://` reference."""

    overlay: dict[str, Any]
    """The installation document passed as the `appInstance_` overlay."""

    overlay_path: Path
    """Where the runner writes `overlay` before invoking the renderer."""

    output_dir: Path
    """Directory the renderer exports manifests into."""

    kubecfg_bin: str = "kubecfg"

    phase = RENDER_PHASE

    def overlay_json(self) -> str:
        return json.dumps(self.overlay, sort_keys=True)

    def command(self, output_dir: Path | None = None) -> list[str]:
        """Renderer argument vector, optionally exporting elsewhere."""
        return [
            self.kubecfg_bin,
            "show",
            self.entrypoint,
            "--alpha",
            "--reorder=server",
            "--overlay-code-file",
            f"{OVERLAY_VAR}={self.overlay_path}",
            "--export-dir",
            str(output_dir or self.output_dir),
            "--export-filename-format",
            EXPORT_FILENAME_FORMAT,
        ]

    def script(self) -> Script:
        write_overlay = Script.from_str(
            f"mkdir -p {quote(str(self.overlay_path.parent))} "
            f"{quote(str(self.output_dir))}\n"
            f"cat > {quote(str(self.overlay_path))} <<'EOF'\n{self.overlay_json()}\nEOF"
        )
        return write_overlay + Script.from_tokens(self.command())


@dataclass(frozen=True)
class ApplyStep:
    """Apply the manifest directory as the installation's object set."""

    input_dir: Path
    """Always the render step's output directory."""

    object_set: ObjectSet

    field_manager: str = FIELD_MANAGER

    impersonate: str | None = None
    """User to act as, passed through as `kubectl --as`."""

    kubectl_bin: str = "kubectl"

    env: dict[str, str] = field(default_factory=lambda: dict(APPLYSET_ENV))

    phase = APPLY_PHASE

    @property
    def namespace(self) -> str:
        return self.object_set.namespace

    def _impersonate_args(self) -> list[str]:
        return ["--as", self.impersonate] if self.impersonate else []

    def command(self, input_path: str | None = None) -> list[str]:
        """`kubectl apply` argument vector, pruning absent members."""
        return [
            self.kubectl_bin,
            "apply",
            "-n",
            self.namespace,
            "--server-side",
            "--prune",
            "--applyset",
            self.object_set.name,
            "--field-manager",
            self.field_manager,
            "--force-conflicts",
            "-v=2",
            *self._impersonate_args(),
            "-f",
            input_path or str(self.input_dir),
        ]

    def label_command(self) -> list[str]:
        """Label the manifests with the set id locally, without a server call."""
        return [
            self.kubectl_bin,
            "label",
            "--local",
            "-f",
            str(self.input_dir),
            "-o",
            "json",
            f"{PART_OF_LABEL}={self.object_set.id}",
        ]

    def diff_command(self) -> list[str]:
        """`kubectl diff` of labelled manifests read from stdin."""
        return [
            self.kubectl_bin,
            "diff",
            "-n",
            self.namespace,
            "-f",
            "-",
            "--server-side",
            "--force-conflicts",
            f"--field-manager={self.field_manager}",
            *self._impersonate_args(),
        ]

    def script(self) -> Script:
        return Script.from_tokens(self.command())

    def diff_script(self) -> Script:
        return (
            Script.from_tokens(self.label_command())
            | Script.from_tokens(self.diff_command())
        ).subshell()


@dataclass(frozen=True)
class UninstallStep:
    """Remove every member of an object set, then its bookkeeping.

    `kubectl apply --prune` needs at least one object, so a blank ConfigMap
    is applied as the only member, which prunes everything else. The
    ConfigMap and the parent Secret are deleted afterwards.
    """

    object_set: ObjectSet
    cleanup_dir: Path
    field_manager: str = FIELD_MANAGER
    impersonate: str | None = None
    kubectl_bin: str = "kubectl"
    env: dict[str, str] = field(default_factory=lambda: dict(APPLYSET_ENV))

    phase = UNINSTALL_PHASE

    @property
    def cleanup_name(self) -> str:
        return f"{self.object_set.name}-cleanup"

    @property
    def cleanup_path(self) -> Path:
        return self.cleanup_dir / f"{self.cleanup_name}.yaml"

    def cleanup_doc(self) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": self.cleanup_name,
                "namespace": self.object_set.namespace,
            },
        }

    def _impersonate_args(self) -> list[str]:
        return ["--as", self.impersonate] if self.impersonate else []

    def commands(self) -> list[list[str]]:
        """Argument vectors in the order they run, after writing the ConfigMap."""
        namespace = self.object_set.namespace
        return [
            [
                self.kubectl_bin,
                "apply",
                "-n",
                namespace,
                "--server-side",
                "--prune",
                "--applyset",
                self.object_set.name,
                "--field-manager",
                self.field_manager,
                "--force-conflicts",
                "-v=2",
                *self._impersonate_args(),
                "-f",
                str(self.cleanup_dir),
            ],
            [
                self.kubectl_bin,
                "delete",
                "configmap",
                self.cleanup_name,
                "--namespace",
                namespace,
                "--ignore-not-found",
                *self._impersonate_args(),
            ],
            [
                self.kubectl_bin,
                "delete",
                "secret",
                self.object_set.name,
                "--namespace",
                namespace,
                "--ignore-not-found",
                *self._impersonate_args(),
            ],
        ]

    def script(self) -> Script:
        setup = Script.from_tokens(
            [
                self.kubectl_bin,
                "create",
                "configmap",
                self.cleanup_name,
                "--namespace",
                self.object_set.namespace,
                "--dry-run=client",
                "-o=yaml",
                ">",
                str(self.cleanup_path),
            ]
        )
        return Script.join(
            [
                Script.from_str("export KUBECTL_APPLYSET=true"),
                Script.from_tokens(["mkdir", "-p", str(self.cleanup_dir)]),
                setup,
                *(Script.from_tokens(cmd) for cmd in self.commands()),
            ]
        )


@dataclass(frozen=True)
class ExecutionPlan:
    """The ordered render and apply phases of one attempt."""

    installation: NamedResource
    generation: int
    digest: str
    render: RenderStep
    apply: ApplyStep
    workdir: Path

    kubecfg_version: str | None = None
    """Renderer version the package was built with, if recorded."""

    pull_secrets: tuple[str, ...] = ()
    """Names of the pull secrets the renderer may use, never their contents."""

    registry_credentials: DockerConfig | None = field(
        default=None, repr=False, compare=False
    )
    """The credential that fetched the package, for renderers pulling it again."""

    @property
    def phases(self) -> tuple[RenderStep, ApplyStep]:
        return (self.render, self.apply)

    @property
    def object_set(self) -> ObjectSet:
        return self.apply.object_set

    def script(self, mode: RunMode = RunMode.APPLY) -> Script:
        """The shell script a runner would execute for `mode`."""
        steps = [Script.from_str("export KUBECTL_APPLYSET=true"), self.render.script()]
        if mode is RunMode.RENDER:
            steps.append(
                Script.from_str(
                    f"for f in {quote(str(self.render.output_dir))}/*; "
                    'do echo "---"; cat "$f"; done'
                )
            )
        elif mode is RunMode.DIFF:
            steps.append(self.apply.diff_script())
        else:
            steps.append(self.apply.script())
        return Script.join(steps)


def synthesize(
    package: ResolvedPackage,
    installation: Installation,
    object_set: ObjectSet,
    workdir: Path,
    *,
    in_cluster: bool = False,
    config: RunnerConfig | None = None,
) -> ExecutionPlan:
    """Build the execution plan for an installation.

    This only describes the attempt; nothing is written and the cluster is
    not contacted. In-cluster plans refer to the package by its digest
    pinned reference since the renderer fetches it again inside the job.

    Raises PlanError if the installation cannot be turned into a plan.
    """
    config = config or RunnerConfig()
    if not installation.namespace:
        raise PlanError(f"Installation {installation.name} has no namespace")
    if object_set.namespace != installation.namespace:
        raise PlanError(
            f"Object set {object_set.id} is in namespace {object_set.namespace}, "
            f"not {installation.namespace}"
        )
    overlay = installation.overlay()
    try:
        json.dumps(overlay, allow_nan=False)
    except (TypeError, ValueError) as err:
        raise PlanError(
            f"Configuration of {installation.namespaced_name} is not serializable: {err}"
        ) from err

    if in_cluster and package.pinned_reference:
        entrypoint = package.pinned_reference
    else:
        entrypoint = str(package.entrypoint)
    output_dir = workdir / MANIFESTS_DIR
    render = RenderStep(
        entrypoint=entrypoint,
        overlay=overlay,
        overlay_path=workdir / "overlay" / OVERLAY_FILENAME,
        output_dir=output_dir,
        kubecfg_bin=config.kubecfg_bin,
    )
    apply = ApplyStep(
        input_dir=output_dir,
        object_set=object_set,
        impersonate=config.impersonate,
        kubectl_bin=config.kubectl_bin,
    )
    _LOGGER.debug(
        "Synthesized plan for %s generation %d (%s)",
        installation.namespaced_name,
        installation.generation,
        package.digest,
    )
    return ExecutionPlan(
        installation=installation.resource_id,
        generation=installation.generation,
        digest=package.digest,
        render=render,
        apply=apply,
        workdir=workdir,
        kubecfg_version=package.config.kubecfg_version(),
        pull_secrets=tuple(installation.image_pull_secrets),
        registry_credentials=package.docker_config(),
    )


def uninstall_step(
    object_set: ObjectSet, workdir: Path, config: RunnerConfig | None = None
) -> UninstallStep:
    """Describe the removal of an object set."""
    config = config or RunnerConfig()
    return UninstallStep(
        object_set=object_set,
        cleanup_dir=workdir / "cleanup",
        impersonate=config.impersonate,
        kubectl_bin=config.kubectl_bin,
    )
