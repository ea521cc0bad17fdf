"""Runner executing plans in the current process."""

import logging
from pathlib import Path
import shutil

from kubit.applier import Applier
from kubit.context import trace_context
from kubit.exceptions import InputException
from kubit.manifest import parse_manifest_dir
from kubit.plan import ExecutionPlan, RunMode, UninstallStep
from kubit.renderer import Renderer
from kubit.result import AttemptResult, PhaseResult

from .base import Runner

__all__ = [
    "LocalRunner",
]

_LOGGER = logging.getLogger(__name__)

STAGING_SUFFIX = ".staging"


class LocalRunner(Runner):
    """Runs the render and apply phases with the given capabilities."""

    def __init__(
        self,
        renderer: Renderer,
        applier: Applier,
    ) -> None:
        self._renderer = renderer
        self._applier = applier

    async def _render(self, plan: ExecutionPlan) -> PhaseResult:
        """Render into a staging directory, moved into place on success."""
        output_dir = plan.render.output_dir
        staging = staging_dir(output_dir)
        for path in (staging, output_dir):
            if path.exists():
                shutil.rmtree(path)
        staging.mkdir(parents=True)
        with trace_context(f"Render '{plan.installation.namespaced_name}'"):
            result = await self._renderer.render(plan.render, staging)
        if result.success:
            staging.rename(output_dir)
        else:
            shutil.rmtree(staging, ignore_errors=True)
        return result

    async def _execute(self, plan: ExecutionPlan, result: AttemptResult) -> None:
        render = await self._render(plan)
        result.phases.append(render)
        if not render.success:
            result.error = render.error()
            return
        if result.mode is RunMode.RENDER:
            result.manifests = parse_manifest_dir(plan.render.output_dir)
            return
        if result.mode is RunMode.DIFF:
            result.manifests = parse_manifest_dir(plan.render.output_dir)
            diff_phase, object_set_diff = await self._applier.diff(plan.apply)
            result.phases.append(diff_phase)
            result.diff = object_set_diff
            if not diff_phase.success:
                result.error = diff_phase.error()
            return
        with trace_context(f"Apply '{plan.installation.namespaced_name}'"):
            apply = await self._applier.apply(plan.apply)
        result.phases.append(apply)
        if not apply.success:
            result.error = apply.error()
            return
        result.members = await self._applier.members(plan.object_set)

    async def run(self, plan: ExecutionPlan, mode: RunMode) -> AttemptResult:
        result = AttemptResult(
            installation=plan.installation,
            generation=plan.generation,
            mode=mode,
            digest=plan.digest,
        )
        if mode is RunMode.SCRIPT:
            result.script = plan.script(RunMode.APPLY)
            return result
        _LOGGER.debug(
            "Running plan for %s generation %d in %s mode",
            plan.installation,
            plan.generation,
            mode.value,
        )
        try:
            await self._execute(plan, result)
        except InputException as err:
            _LOGGER.info("Attempt on %s failed: %s", plan.installation, err)
            result.error = err
        return result

    async def uninstall(self, step: UninstallStep) -> PhaseResult:
        with trace_context(f"Uninstall '{step.object_set.id}'"):
            return await self._applier.uninstall(step)


def staging_dir(output_dir: Path) -> Path:
    """Where the renderer writes before the output is moved into place."""
    return output_dir.with_name(output_dir.name + STAGING_SUFFIX)
