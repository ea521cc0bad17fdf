"""Tests for execution plan synthesis."""

from collections.abc import Callable
import json
from pathlib import Path
from typing import Any

import pytest

from kubit.config import RunnerConfig
from kubit.exceptions import PlanError
from kubit.manifest import Installation, NamedResource
from kubit.objectset import PART_OF_LABEL, object_set_for
from kubit.package import PackageConfig, ResolvedPackage
from kubit.plan import RunMode, synthesize, uninstall_step

PINNED = "oci://docker.io/demo@sha256:abcd"


@pytest.fixture(name="package")
def package_fixture(tmp_path: Path) -> ResolvedPackage:
    """A package extracted into a temporary directory."""
    root = tmp_path / "package"
    root.mkdir()
    (root / "main.jsonnet").write_text("{}")
    return ResolvedPackage(
        reference="demo:v1",
        digest="sha256:abcd",
        path=root,
        entrypoint=root / "main.jsonnet",
        config=PackageConfig(
            entrypoint="main.jsonnet",
            metadata={"pack.kubecfg.dev/v1alpha1": {"version": "v0.34.0"}},
        ),
        pinned_reference=PINNED,
    )


@pytest.fixture(name="installation")
def installation_fixture(app_instance: Callable[..., dict[str, Any]]) -> Installation:
    """The demo installation."""
    return Installation.parse_doc(
        app_instance(spec={"replicas": 2}, pull_secrets=["pull"], generation=5)
    )


def test_synthesize(
    package: ResolvedPackage, installation: Installation, tmp_path: Path
) -> None:
    """Test the phases of a plan."""
    object_set = object_set_for(installation.resource_id)
    workdir = tmp_path / "work"
    plan = synthesize(package, installation, object_set, workdir)

    assert plan.installation == NamedResource("AppInstance", "default", "demo")
    assert plan.generation == 5
    assert plan.digest == "sha256:abcd"
    assert plan.kubecfg_version == "v0.34.0"
    assert plan.pull_secrets == ("pull",)
    assert [step.phase for step in plan.phases] == ["render", "apply"]

    render = plan.render
    assert render.entrypoint == str(package.entrypoint)
    assert json.loads(render.overlay_json()) == installation.overlay()
    command = render.command()
    assert command[:3] == ["kubecfg", "show", str(package.entrypoint)]
    assert f"appInstance_={render.overlay_path}" in command
    assert command[command.index("--export-dir") + 1] == str(workdir / "manifests")

    apply = plan.apply
    assert apply.input_dir == render.output_dir
    assert apply.env == {"KUBECTL_APPLYSET": "true"}
    command = apply.command()
    assert command[:2] == ["kubectl", "apply"]
    assert command[command.index("--applyset") + 1] == "demo"
    assert command[command.index("-n") + 1] == "default"
    assert "--prune" in command
    assert "--server-side" in command
    assert "--as" not in command


def test_synthesize_in_cluster(
    package: ResolvedPackage, installation: Installation, tmp_path: Path
) -> None:
    """Test in-cluster plans render the digest pinned reference."""
    plan = synthesize(
        package,
        installation,
        object_set_for(installation.resource_id),
        tmp_path,
        in_cluster=True,
        config=RunnerConfig(impersonate="admin", kubectl_bin="/bin/kubectl"),
    )
    assert plan.render.entrypoint == PINNED
    command = plan.apply.command()
    assert command[0] == "/bin/kubectl"
    assert command[command.index("--as") + 1] == "admin"


def test_synthesize_object_set_mismatch(
    package: ResolvedPackage, installation: Installation, tmp_path: Path
) -> None:
    """Test the object set must live next to the installation."""
    object_set = object_set_for(NamedResource("AppInstance", "prod", "demo"))
    with pytest.raises(PlanError, match="namespace prod"):
        synthesize(package, installation, object_set, tmp_path)


def test_synthesize_does_not_write(
    package: ResolvedPackage, installation: Installation, tmp_path: Path
) -> None:
    """Test planning has no side effects on the work directory."""
    workdir = tmp_path / "work"
    synthesize(
        package, installation, object_set_for(installation.resource_id), workdir
    )
    assert not workdir.exists()


def test_script(
    package: ResolvedPackage, installation: Installation, tmp_path: Path
) -> None:
    """Test the script printed for each mode."""
    plan = synthesize(
        package, installation, object_set_for(installation.resource_id), tmp_path
    )
    apply_script = str(plan.script(RunMode.APPLY))
    assert apply_script.startswith("#!/bin/bash\nset -euo pipefail\n")
    assert "export KUBECTL_APPLYSET=true" in apply_script
    assert plan.render.overlay_json() in apply_script
    assert "kubecfg \\\n    show" in apply_script
    assert "kubectl \\\n    apply" in apply_script

    diff_script = str(plan.script(RunMode.DIFF))
    assert "kubectl \\\n    diff" in diff_script
    assert f"{PART_OF_LABEL}={plan.object_set.id}" in diff_script
    assert "kubectl \\\n    apply" not in diff_script

    render_script = str(plan.script(RunMode.RENDER))
    assert "kubectl" not in render_script


def test_run_mode_mutates() -> None:
    """Test only apply mutates the cluster."""
    assert RunMode.APPLY.mutates
    assert not any(
        mode.mutates for mode in (RunMode.RENDER, RunMode.DIFF, RunMode.SCRIPT)
    )


def test_uninstall_step(tmp_path: Path) -> None:
    """Test the commands removing an object set."""
    object_set = object_set_for(NamedResource("AppInstance", "default", "demo"))
    step = uninstall_step(object_set, tmp_path, RunnerConfig(impersonate="admin"))
    assert step.cleanup_name == "demo-cleanup"
    assert step.cleanup_doc()["metadata"] == {
        "name": "demo-cleanup",
        "namespace": "default",
    }
    prune, delete_cleanup, delete_parent = step.commands()
    assert prune[prune.index("--applyset") + 1] == "demo"
    assert prune[-1] == str(tmp_path / "cleanup")
    assert delete_cleanup[1:4] == ["delete", "configmap", "demo-cleanup"]
    assert delete_parent[1:4] == ["delete", "secret", "demo"]
    for cmd in (prune, delete_cleanup, delete_parent):
        assert cmd[cmd.index("--as") + 1] == "admin"
    script = str(step.script())
    assert "--dry-run=client" in script
    assert "> " in script


def test_script_quotes_paths(
    package: ResolvedPackage, installation: Installation, tmp_path: Path
) -> None:
    """Test work directories containing spaces survive in the script."""
    workdir = tmp_path / "work dir"
    plan = synthesize(
        package, installation, object_set_for(installation.resource_id), workdir
    )
    script = str(plan.script(RunMode.RENDER))
    assert f"mkdir -p '{workdir}/overlay' '{workdir}/manifests'\n" in script
    assert f"cat > '{workdir}/overlay/overlay.json' <<'EOF'" in script
    assert f"for f in '{workdir}/manifests'/*; do" in script
