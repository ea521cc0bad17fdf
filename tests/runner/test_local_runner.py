"""Tests for running plans in process."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from kubit.applier import InMemoryApplier, InMemoryCluster
from kubit.diff import DiffAction
from kubit.manifest import Installation, ObjectRef
from kubit.objectset import PART_OF_LABEL, object_set_for
from kubit.package import PackageConfig, ResolvedPackage
from kubit.plan import ExecutionPlan, RunMode, synthesize, uninstall_step
from kubit.renderer import InMemoryRenderer
from kubit.runner import LocalRunner
from kubit.runner.local import staging_dir

SERVICE = {
    "apiVersion": "v1",
    "kind": "Service",
    "metadata": {"name": "demo"},
    "spec": {"ports": [{"port": 80}]},
}
CONFIG_MAP = {
    "apiVersion": "v1",
    "kind": "ConfigMap",
    "metadata": {"name": "demo-config"},
    "data": {"key": "value"},
}
SERVICE_REF = ObjectRef("", "v1", "Service", "default", "demo")
CONFIG_MAP_REF = ObjectRef("", "v1", "ConfigMap", "default", "demo-config")


@pytest.fixture(name="plan")
def plan_fixture(
    app_instance: Callable[..., dict[str, Any]], tmp_path: Path
) -> ExecutionPlan:
    """A plan for the demo installation."""
    root = tmp_path / "package"
    root.mkdir()
    (root / "main.jsonnet").write_text("{}")
    package = ResolvedPackage(
        reference="demo:v1",
        digest="sha256:abcd",
        path=root,
        entrypoint=root / "main.jsonnet",
        config=PackageConfig(entrypoint="main.jsonnet"),
        pinned_reference="oci://docker.io/demo@sha256:abcd",
    )
    installation = Installation.parse_doc(app_instance(generation=1))
    return synthesize(
        package,
        installation,
        object_set_for(installation.resource_id),
        tmp_path / "work",
    )


@pytest.fixture(name="renderer")
def renderer_fixture() -> InMemoryRenderer:
    """Renderer for the demo package."""
    return InMemoryRenderer({"demo:v1": [SERVICE, CONFIG_MAP]})


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    """An empty cluster."""
    return InMemoryCluster()


@pytest.fixture(name="runner")
def runner_fixture(renderer: InMemoryRenderer, cluster: InMemoryCluster) -> LocalRunner:
    """Runner acting on the in memory cluster."""
    return LocalRunner(renderer, InMemoryApplier(cluster))


async def test_apply(
    runner: LocalRunner, cluster: InMemoryCluster, plan: ExecutionPlan
) -> None:
    """Test rendering and applying the object set."""
    result = await runner.run(plan, RunMode.APPLY)
    assert result.success
    assert [phase.phase for phase in result.phases] == ["render", "apply"]
    assert result.digest == "sha256:abcd"
    assert result.members == {SERVICE_REF, CONFIG_MAP_REF}

    service = cluster.get(SERVICE_REF)
    assert service is not None
    assert service["metadata"]["labels"][PART_OF_LABEL] == plan.object_set.id
    assert plan.object_set.parent in cluster

    assert plan.render.output_dir.is_dir()
    assert not staging_dir(plan.render.output_dir).exists()


async def test_apply_prunes(
    renderer: InMemoryRenderer,
    runner: LocalRunner,
    cluster: InMemoryCluster,
    plan: ExecutionPlan,
) -> None:
    """Test objects no longer rendered are removed."""
    assert (await runner.run(plan, RunMode.APPLY)).success
    renderer.templates["demo:v1"] = [SERVICE]
    result = await runner.run(plan, RunMode.APPLY)
    assert result.success
    assert result.members == {SERVICE_REF}
    assert CONFIG_MAP_REF not in cluster


async def test_prune_failure(
    renderer: InMemoryRenderer,
    runner: LocalRunner,
    cluster: InMemoryCluster,
    plan: ExecutionPlan,
) -> None:
    """Test an object that cannot be pruned fails the apply phase."""
    assert (await runner.run(plan, RunMode.APPLY)).success
    renderer.templates["demo:v1"] = [SERVICE]
    cluster.refuse_delete.add(CONFIG_MAP_REF)
    result = await runner.run(plan, RunMode.APPLY)
    assert not result.success
    assert result.error is not None
    assert result.error.reason == "ApplyFailed"
    assert "not pruned" in result.logs()["apply"]


@pytest.mark.parametrize("mode", [RunMode.RENDER, RunMode.DIFF, RunMode.SCRIPT])
async def test_dry_run_modes_do_not_mutate(
    runner: LocalRunner, cluster: InMemoryCluster, plan: ExecutionPlan, mode: RunMode
) -> None:
    """Test the dry run modes leave the cluster untouched."""
    cluster.put(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "unrelated", "namespace": "other"},
        }
    )
    before = cluster.snapshot()
    mutations = cluster.mutations
    result = await runner.run(plan, mode)
    assert result.success
    assert cluster.snapshot() == before
    assert cluster.mutations == mutations


async def test_render(runner: LocalRunner, plan: ExecutionPlan) -> None:
    """Test the render mode returns the rendered objects."""
    result = await runner.run(plan, RunMode.RENDER)
    assert [phase.phase for phase in result.phases] == ["render"]
    assert [doc["kind"] for doc in result.manifests] == ["Service", "ConfigMap"]


async def test_diff(runner: LocalRunner, plan: ExecutionPlan) -> None:
    """Test the diff mode compares against the cluster."""
    result = await runner.run(plan, RunMode.DIFF)
    assert result.diff is not None
    assert set(result.diff.by_action(DiffAction.ADDED)) == {
        SERVICE_REF,
        CONFIG_MAP_REF,
    }

    assert (await runner.run(plan, RunMode.APPLY)).success
    result = await runner.run(plan, RunMode.DIFF)
    assert result.diff is not None
    assert not result.diff.has_changes


async def test_script(
    renderer: InMemoryRenderer, runner: LocalRunner, plan: ExecutionPlan
) -> None:
    """Test the script mode runs nothing."""
    result = await runner.run(plan, RunMode.SCRIPT)
    assert result.script is not None
    assert not result.phases
    assert not renderer.calls
    text = str(result.script)
    assert "kubecfg \\\n    show" in text
    assert "kubectl \\\n    apply" in text


async def test_render_failure(
    renderer: InMemoryRenderer,
    runner: LocalRunner,
    cluster: InMemoryCluster,
    plan: ExecutionPlan,
) -> None:
    """Test a failed render aborts the attempt before anything is applied."""
    renderer.failures["demo:v1"] = (1, "RUNTIME ERROR: field replicas missing\n")
    result = await runner.run(plan, RunMode.APPLY)
    assert not result.success
    assert result.error is not None
    assert result.error.reason == "RenderFailed"
    assert result.phase("apply") is None
    assert result.logs()["render"] == "RUNTIME ERROR: field replicas missing\n"
    assert not cluster.objects()
    assert not staging_dir(plan.render.output_dir).exists()
    assert not plan.render.output_dir.exists()


async def test_duplicate_objects(
    renderer: InMemoryRenderer, runner: LocalRunner, plan: ExecutionPlan
) -> None:
    """Test rendered output naming the same object twice."""
    renderer.templates["demo:v1"] = [SERVICE, SERVICE]
    result = await runner.run(plan, RunMode.APPLY)
    assert not result.success
    assert "more than once" in str(result.error)


async def test_uninstall(
    runner: LocalRunner, cluster: InMemoryCluster, plan: ExecutionPlan, tmp_path: Path
) -> None:
    """Test removing every member and the parent."""
    assert (await runner.run(plan, RunMode.APPLY)).success
    phase = await runner.uninstall(uninstall_step(plan.object_set, tmp_path))
    assert phase.success
    assert not cluster.objects()
