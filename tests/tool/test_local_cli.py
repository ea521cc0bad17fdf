"""Tests for the kubit command line tool."""

from collections.abc import Callable
from pathlib import Path
import sys
from typing import Any

import pytest
import yaml

from kubit import local
from kubit.applier import InMemoryApplier, InMemoryCluster
from kubit.manifest import ObjectRef
from kubit.plan import RunMode
from kubit.renderer import InMemoryRenderer
from kubit.tool import kubit as kubit_tool
from kubit.tool.controller import ControllerAction
from kubit.tool.local import LocalApplyAction, LocalDeleteAction
from kubit.tool.metadata import MetadataImagesAction

SERVICE = {
    "apiVersion": "v1",
    "kind": "Service",
    "metadata": {"name": "demo"},
    "spec": {"ports": [{"port": 80}]},
}
SERVICE_REF = ObjectRef("", "v1", "Service", "default", "demo")


@pytest.fixture(name="app_file")
def app_file_fixture(
    app_instance: Callable[..., dict[str, Any]], tmp_path: Path
) -> Path:
    """An AppInstance file on disk."""
    path = tmp_path / "app.yaml"
    path.write_text(yaml.dump(app_instance(spec={"replicas": 1})))
    return path


@pytest.fixture(name="package_image")
def package_image_fixture(tmp_path: Path) -> str:
    """A package in a local directory."""
    root = tmp_path / "src"
    root.mkdir()
    (root / "main.jsonnet").write_text("function(appInstance_) {}\n")
    return f"file://{root / 'main.jsonnet'}"


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    """An empty cluster."""
    return InMemoryCluster()


@pytest.fixture(name="run_apply")
def run_apply_fixture(
    app_file: Path, package_image: str, cluster: InMemoryCluster, tmp_path: Path
) -> Callable[..., Any]:
    """Run `kubit local apply` against the in memory cluster."""

    async def run(mode: RunMode = RunMode.APPLY) -> str:
        result = await local.local_apply(
            app_file,
            mode,
            package_image=package_image,
            skip_auth=True,
            renderer=InMemoryRenderer({package_image: [SERVICE]}),
            applier=InMemoryApplier(cluster),
            workdir_base=tmp_path / "work",
        )
        assert result.success, result.error
        return local.format_result(result)

    return run


async def test_apply(run_apply: Callable[..., Any], cluster: InMemoryCluster) -> None:
    """Test applying a local file."""
    output = await run_apply()
    assert "service/demo serverside-applied" in output
    assert SERVICE_REF in cluster


async def test_render(run_apply: Callable[..., Any], cluster: InMemoryCluster) -> None:
    """Test printing the rendered manifests."""
    output = await run_apply(RunMode.RENDER)
    (doc,) = yaml.safe_load_all(output)
    assert doc["kind"] == "Service"
    assert not cluster.objects()


async def test_diff(run_apply: Callable[..., Any], cluster: InMemoryCluster) -> None:
    """Test printing the changes an apply would make."""
    output = await run_apply(RunMode.DIFF)
    assert "+kind: Service" in output
    assert not cluster.objects()

    await run_apply()
    assert await run_apply(RunMode.DIFF) == "No changes\n"


async def test_script(
    run_apply: Callable[..., Any], cluster: InMemoryCluster, tmp_path: Path
) -> None:
    """Test printing the script instead of running it."""
    output = await run_apply(RunMode.SCRIPT)
    assert "kubecfg \\\n    show" in output
    assert "kubectl \\\n    apply" in output
    assert "KUBECTL_APPLYSET=true" in output
    assert not cluster.objects()
    assert (tmp_path / "work").exists()


async def test_delete(
    run_apply: Callable[..., Any],
    app_file: Path,
    cluster: InMemoryCluster,
    tmp_path: Path,
) -> None:
    """Test uninstalling a local file."""
    await run_apply()

    result = await local.local_delete(
        app_file, RunMode.SCRIPT, workdir_base=tmp_path / "work"
    )
    assert result.script is not None
    assert "kubectl" in str(result.script)
    assert SERVICE_REF in cluster

    result = await local.local_delete(
        app_file, applier=InMemoryApplier(cluster), workdir_base=tmp_path / "work"
    )
    assert result.success
    assert not cluster.objects()


async def test_apply_failure(
    app_file: Path, package_image: str, tmp_path: Path
) -> None:
    """Test a render failure is reported with its output."""
    result = await local.local_apply(
        app_file,
        package_image=package_image,
        skip_auth=True,
        renderer=InMemoryRenderer(failures={package_image: (1, "RUNTIME ERROR\n")}),
        applier=InMemoryApplier(),
        workdir_base=tmp_path / "work",
    )
    assert not result.success
    assert local.format_result(result) == "RUNTIME ERROR\n"


def test_parse_local_apply() -> None:
    """Test parsing nested local subcommands."""
    parser = kubit_tool._make_parser()
    args = parser.parse_args(
        ["local", "apply", "app.yaml", "--dry-run", "diff", "--as", "admin"]
    )
    assert args.cls is LocalApplyAction
    assert args.path == Path("app.yaml")
    assert args.dry_run == "diff"
    assert args.impersonate == "admin"
    assert not args.skip_auth

    args = parser.parse_args(["local", "delete", "app.yaml", "--dry-run", "script"])
    assert args.cls is LocalDeleteAction

    with pytest.raises(SystemExit):
        parser.parse_args(["local", "delete", "app.yaml", "--dry-run", "render"])


def test_parse_controller() -> None:
    """Test parsing controller flags."""
    parser = kubit_tool._make_parser()
    args = parser.parse_args(
        [
            "controller",
            "--namespace",
            "apps",
            "--local-executor",
            "--max-concurrent",
            "2",
        ]
    )
    assert args.cls is ControllerAction
    assert args.namespace == "apps"
    assert args.local_executor
    assert args.max_concurrent == 2
    assert args.attempt_timeout == 600.0


def test_parse_metadata() -> None:
    """Test parsing metadata subcommands."""
    parser = kubit_tool._make_parser()
    args = parser.parse_args(["metadata", "images", "app.yaml", "--skip-auth"])
    assert args.cls is MetadataImagesAction
    assert args.skip_auth


def test_main_error(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    tmp_path: Path,
) -> None:
    """Test errors are reported without a traceback."""
    monkeypatch.setattr(
        sys, "argv", ["kubit", "local", "apply", str(tmp_path / "missing.yaml")]
    )
    with pytest.raises(SystemExit) as exc_info:
        kubit_tool.main()
    assert exc_info.value.code == 1
    captured = capsys.readouterr()
    assert "AppInstance file not found" in captured.err
    assert "Traceback" not in captured.err
