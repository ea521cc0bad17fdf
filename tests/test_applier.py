"""Tests for the kubectl applier."""

import json
from pathlib import Path
from typing import Any

import pytest
import yaml

from kubit.applier import KubectlApplier
from kubit.manifest import NamedResource
from kubit.objectset import PART_OF_LABEL, object_set_for
from kubit.plan import ApplyStep

DEMO = object_set_for(NamedResource("AppInstance", "default", "demo"))
OTHER = object_set_for(NamedResource("AppInstance", "default", "other"))

FAKE_KUBECTL = """#!/bin/sh
echo "$@" >> {calls}
case "$1" in
  get) cat {live} ;;
  apply) echo "service/shell serverside-applied" ;;
esac
"""


def _service(labels: dict[str, str] | None = None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": "shell", "namespace": "default"}
    if labels:
        metadata["labels"] = labels
    return {"apiVersion": "v1", "kind": "Service", "metadata": metadata}


@pytest.fixture(name="kubectl")
def kubectl_fixture(tmp_path: Path) -> Path:
    """A kubectl stand in listing the objects in `live.json`."""
    script = tmp_path / "kubectl"
    script.write_text(
        FAKE_KUBECTL.format(calls=tmp_path / "calls.log", live=tmp_path / "live.json")
    )
    script.chmod(0o755)
    (tmp_path / "live.json").write_text(json.dumps({"items": []}))
    return script


@pytest.fixture(name="step")
def step_fixture(tmp_path: Path, kubectl: Path) -> ApplyStep:
    """An apply step rendering a single Service."""
    manifests = tmp_path / "manifests"
    manifests.mkdir()
    (manifests / "service.yaml").write_text(yaml.dump(_service()))
    return ApplyStep(input_dir=manifests, object_set=DEMO, kubectl_bin=str(kubectl))


def _calls(tmp_path: Path) -> list[str]:
    return (tmp_path / "calls.log").read_text().splitlines()


async def test_apply(tmp_path: Path, kubectl: Path, step: ApplyStep) -> None:
    """Test applying when no other set owns the rendered objects."""
    applier = KubectlApplier(kubectl_bin=str(kubectl))
    result = await applier.apply(step)
    assert result.success
    assert "serverside-applied" in result.output
    get, apply = _calls(tmp_path)
    assert get.startswith("get Service --all-namespaces -l")
    assert f"{PART_OF_LABEL}!={DEMO.id}" in get
    assert apply.startswith("apply -n default --server-side --prune")


async def test_apply_refuses_foreign_member(
    tmp_path: Path, kubectl: Path, step: ApplyStep
) -> None:
    """Test an object owned by another set is not adopted."""
    (tmp_path / "live.json").write_text(
        json.dumps({"items": [_service({PART_OF_LABEL: OTHER.id})]})
    )
    applier = KubectlApplier(kubectl_bin=str(kubectl))
    result = await applier.apply(step)
    assert not result.success
    expected = f"service/shell in namespace default is a member of object set {OTHER.id}"
    assert expected in result.output
    assert [call.split()[0] for call in _calls(tmp_path)] == ["get"]


async def test_apply_own_member(
    tmp_path: Path, kubectl: Path, step: ApplyStep
) -> None:
    """Test objects already in the set are applied again."""
    (tmp_path / "live.json").write_text(
        json.dumps({"items": [_service({PART_OF_LABEL: DEMO.id})]})
    )
    applier = KubectlApplier(kubectl_bin=str(kubectl))
    result = await applier.apply(step)
    assert result.success
    assert [call.split()[0] for call in _calls(tmp_path)] == ["get", "apply"]
