"""Renderers turn a package entry template and an overlay into manifests.

The renderer is an external tool; kubit only relies on its contract: given
the entry template and the overlay it writes one file per object into the
export directory, or exits non-zero with diagnostics on its output.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
import logging
from pathlib import Path
from time import perf_counter
from typing import Any

import aiofiles
import yaml

from . import command
from .plan import RenderStep
from .result import PhaseResult

__all__ = [
    "Renderer",
    "KubecfgRenderer",
    "InMemoryRenderer",
]

_LOGGER = logging.getLogger(__name__)

Template = list[dict[str, Any]] | Callable[[dict[str, Any]], list[dict[str, Any]]]


async def write_overlay(step: RenderStep) -> None:
    """Write the overlay document where the render command expects it."""
    step.overlay_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(step.overlay_path, mode="w") as overlay_file:
        await overlay_file.write(step.overlay_json())


def export_filename(index: int, doc: dict[str, Any]) -> str:
    """File name for an exported object, mirroring the export filename format."""
    metadata = doc.get("metadata") or {}
    api_version = str(doc.get("apiVersion", "")).replace("/", "_")
    namespace = metadata.get("namespace") or "default"
    kind = doc.get("kind")
    return f"{index:03d}-{api_version}.{kind}-{namespace}.{metadata.get('name')}.yaml"


class Renderer(ABC):
    """Capability to run the render phase of a plan."""

    @abstractmethod
    async def render(self, step: RenderStep, output_dir: Path) -> PhaseResult:
        """Render the step into `output_dir`, which exists and is empty.

        Failures are reported through the returned PhaseResult, never raised.
        """


class KubecfgRenderer(Renderer):
    """Renders by running `kubecfg show` as a subprocess."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        """Initialize KubecfgRenderer with extra environment, e.g. DOCKER_CONFIG."""
        self._env = dict(env or {})

    async def render(self, step: RenderStep, output_dir: Path) -> PhaseResult:
        await write_overlay(step)
        cmd = command.Command(step.command(output_dir), env=self._env)
        start = perf_counter()
        result = await command.capture(cmd)
        _LOGGER.debug("Render of %s exited with %d", step.entrypoint, result.returncode)
        return PhaseResult(
            phase=step.phase,
            exit_code=result.returncode,
            output=result.output,
            elapsed=perf_counter() - start,
        )


class InMemoryRenderer(Renderer):
    """Renders from templates registered per package image.

    A template is either a fixed list of objects or a function of the
    overlay document returning objects.
    """

    def __init__(
        self,
        templates: Mapping[str, Template] | None = None,
        failures: Mapping[str, tuple[int, str]] | None = None,
    ) -> None:
        self.templates: dict[str, Template] = dict(templates or {})
        self.failures: dict[str, tuple[int, str]] = dict(failures or {})
        self.calls: list[str] = []

    async def render(self, step: RenderStep, output_dir: Path) -> PhaseResult:
        image = step.overlay.get("spec", {}).get("package", {}).get("image", "")
        self.calls.append(image)
        if image in self.failures:
            exit_code, output = self.failures[image]
            return PhaseResult(phase=step.phase, exit_code=exit_code, output=output)
        if (template := self.templates.get(image)) is None:
            return PhaseResult(
                phase=step.phase,
                exit_code=1,
                output=f"Error: no template registered for package {image}\n",
            )
        objects = template(step.overlay) if callable(template) else template
        for index, doc in enumerate(objects):
            (output_dir / export_filename(index, doc)).write_text(
                yaml.dump(doc, sort_keys=False)
            )
        return PhaseResult(
            phase=step.phase,
            exit_code=0,
            output=f"Rendered {len(objects)} objects from {image}\n",
        )
