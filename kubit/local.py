"""Run installations against a cluster from a workstation.

This is the engine behind `kubit local`: it reads an AppInstance file,
resolves its package with the user's docker credentials and executes the
plan in process with the kubecfg and kubectl binaries on the PATH. The dry
run modes print what would happen without touching the cluster.
"""

import dataclasses
import logging
from pathlib import Path

from .applier import Applier, KubectlApplier
from .config import ResolverConfig, RunnerConfig
from .credentials import CredentialProvider, LocalCredentials, NoCredentials
from .diff import DiffAction
from .exceptions import UninstallError
from .manifest import Installation, dump_manifests, read_installation
from .objectset import object_set_for
from .package import PackageConfig, PackageResolver
from .plan import RunMode, synthesize, uninstall_step
from .renderer import KubecfgRenderer, Renderer
from .result import AttemptResult
from .runner import LocalRunner
from .workdir import attempt_workdir

__all__ = [
    "local_apply",
    "local_delete",
    "fetch_package_config",
    "format_result",
]

_LOGGER = logging.getLogger(__name__)


def _credentials(
    skip_auth: bool, credentials: CredentialProvider | None
) -> CredentialProvider:
    if skip_auth:
        return NoCredentials()
    return credentials or LocalCredentials()


async def load_installation(
    path: Path, package_image: str | None = None
) -> Installation:
    """Read an AppInstance file, optionally overriding its package image."""
    installation = await read_installation(path)
    if package_image:
        _LOGGER.debug("Overriding package image with %s", package_image)
        installation = dataclasses.replace(
            installation,
            package=dataclasses.replace(installation.package, image=package_image),
        )
    return installation


async def local_apply(
    path: Path,
    mode: RunMode = RunMode.APPLY,
    *,
    package_image: str | None = None,
    skip_auth: bool = False,
    impersonate: str | None = None,
    renderer: Renderer | None = None,
    applier: Applier | None = None,
    resolver: PackageResolver | None = None,
    credentials: CredentialProvider | None = None,
    workdir_base: Path | None = None,
) -> AttemptResult:
    """Resolve, plan and run the installation in `path`.

    The script mode prints a script that fetches the package itself, so
    only the plan is kept and nothing is executed.
    """
    installation = await load_installation(path, package_image)
    runner_config = RunnerConfig(impersonate=impersonate)
    resolver = resolver or PackageResolver(ResolverConfig(skip_auth=skip_auth))
    provider = _credentials(skip_auth, credentials)
    applier = applier or KubectlApplier(kubectl_bin=runner_config.kubectl_bin)
    runner = LocalRunner(renderer or KubecfgRenderer(), applier)
    resource_id = installation.resource_id
    with attempt_workdir(
        resource_id,
        installation.generation,
        workdir_base,
        keep=mode is RunMode.SCRIPT,
    ) as workdir:
        package = await resolver.resolve(
            installation.package.image,
            await provider.credentials(installation),
            workdir.subdir("package"),
        )
        plan = synthesize(
            package,
            installation,
            object_set_for(resource_id),
            workdir.path,
            in_cluster=mode is RunMode.SCRIPT,
            config=runner_config,
        )
        return await runner.run(plan, mode)


async def local_delete(
    path: Path,
    mode: RunMode = RunMode.APPLY,
    *,
    impersonate: str | None = None,
    applier: Applier | None = None,
    workdir_base: Path | None = None,
) -> AttemptResult:
    """Uninstall the object set of the installation in `path`.

    Only the apply and script modes are meaningful; the script mode returns
    the commands without running them.
    """
    installation = await read_installation(path)
    runner_config = RunnerConfig(impersonate=impersonate)
    resource_id = installation.resource_id
    result = AttemptResult(
        installation=resource_id,
        generation=installation.generation,
        mode=mode,
    )
    with attempt_workdir(resource_id, installation.generation, workdir_base) as workdir:
        step = uninstall_step(object_set_for(resource_id), workdir.path, runner_config)
        if mode is not RunMode.APPLY:
            result.script = step.script()
            return result
        applier = applier or KubectlApplier(kubectl_bin=runner_config.kubectl_bin)
        runner = LocalRunner(KubecfgRenderer(), applier)
        phase = await runner.uninstall(step)
    result.phases.append(phase)
    if not phase.success:
        result.error = UninstallError(
            f"Uninstall of {installation.namespaced_name} failed: {phase.output.strip()}"
        )
    return result


async def fetch_package_config(
    path: Path,
    skip_auth: bool = False,
    resolver: PackageResolver | None = None,
    credentials: CredentialProvider | None = None,
) -> PackageConfig:
    """Fetch the package config of the installation in `path`."""
    installation = await read_installation(path)
    resolver = resolver or PackageResolver(ResolverConfig(skip_auth=skip_auth))
    provider = _credentials(skip_auth, credentials)
    return await resolver.fetch_config(
        installation.package.image, await provider.credentials(installation)
    )


def format_result(result: AttemptResult) -> str:
    """Render the outcome of a local run for the terminal."""
    if result.script is not None:
        return str(result.script)
    if result.mode is RunMode.RENDER and result.success:
        return dump_manifests(result.manifests)
    if result.mode is RunMode.DIFF and result.diff is not None and result.success:
        if not result.diff.has_changes:
            return "No changes\n"
        lines = [result.diff.text()]
        for entry in result.diff.entries:
            if entry.action is DiffAction.PRUNED and not entry.diff:
                lines.append(f"- {entry.ref} (pruned)\n")
        return "".join(lines)
    return "".join(phase.output for phase in result.phases)
