"""Tests for object set diffs."""

from typing import Any

import yaml

from kubit.diff import DiffAction, compute_diff
from kubit.manifest import ObjectRef
from kubit.objectset import label

SET_ID = "applyset-demo-v1"


def _service(name: str, port: int = 80) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": "default"},
        "spec": {"ports": [{"port": port}]},
    }


def _by_ref(*docs: dict[str, Any]) -> dict[ObjectRef, dict[str, Any]]:
    return {ObjectRef.from_doc(doc): doc for doc in docs}


def test_diff_actions() -> None:
    """Test objects are classified by what an apply would do."""
    live_same = label(_service("same"), SET_ID)
    live_same["metadata"]["resourceVersion"] = "12"
    live_same["status"] = {"loadBalancer": {}}
    live = _by_ref(
        live_same,
        label(_service("changed"), SET_ID),
        label(_service("stale"), SET_ID),
        _service("foreign"),
    )
    rendered = _by_ref(
        label(_service("same"), SET_ID),
        label(_service("changed", port=8080), SET_ID),
        label(_service("new"), SET_ID),
    )
    result = compute_diff(SET_ID, live, rendered)
    actions = {entry.ref.name: entry.action for entry in result.entries}
    assert actions == {
        "same": DiffAction.UNCHANGED,
        "changed": DiffAction.CHANGED,
        "new": DiffAction.ADDED,
        "stale": DiffAction.PRUNED,
    }
    assert result.has_changes
    assert "-  - port: 80" in result.text()
    assert "+  - port: 8080" in result.text()
    summary = yaml.safe_load(result.yaml())
    assert summary["objectSet"] == SET_ID
    assert {diff["name"] for diff in summary["diffs"]} == {"changed", "new", "stale"}


def test_no_changes() -> None:
    """Test a rendering identical to live state."""
    docs = _by_ref(label(_service("a"), SET_ID))
    result = compute_diff(SET_ID, docs, docs)
    assert not result.has_changes
    assert result.text() == ""
    assert result.by_action(DiffAction.UNCHANGED) == list(docs)


def test_diff_truncated() -> None:
    """Test large diffs are bounded."""
    rendered = _service("big")
    rendered["data"] = {f"key{i}": "x" * 100 for i in range(100)}
    result = compute_diff(SET_ID, {}, _by_ref(rendered), limit_bytes=500)
    assert len(result.text()) < 700
    assert "[Diff truncated by kubit]" in result.text()
