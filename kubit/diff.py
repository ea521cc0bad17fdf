"""Module for computing object set diffs.

This is used by appliers that compare rendered manifests against the live
members of an object set without applying them.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import difflib
from enum import Enum
import logging
from typing import Any, TypeVar

import yaml

from .manifest import ObjectRef, STRIP_METADATA
from .objectset import safe_prune_set

__all__ = [
    "DiffAction",
    "DiffEntry",
    "ObjectSetDiff",
    "compute_diff",
]

_LOGGER = logging.getLogger(__name__)

_TRUNCATE = "[Diff truncated by kubit]"

DEFAULT_CONTEXT_LINES = 3
DEFAULT_LIMIT_BYTES = 10000

T = TypeVar("T")


class DiffAction(str, Enum):
    """What applying the rendering would do to an object."""

    ADDED = "added"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    PRUNED = "pruned"


@dataclass(frozen=True)
class DiffEntry:
    """The diff of a single object."""

    ref: ObjectRef
    action: DiffAction
    diff: str = ""


@dataclass
class ObjectSetDiff:
    """Per object diff of a rendering against the live object set."""

    set_id: str
    entries: list[DiffEntry] = field(default_factory=list)

    def by_action(self, action: DiffAction) -> list[ObjectRef]:
        return [entry.ref for entry in self.entries if entry.action == action]

    @property
    def has_changes(self) -> bool:
        return any(entry.action != DiffAction.UNCHANGED for entry in self.entries)

    def text(self) -> str:
        """Unified diff text of every changed object."""
        return "".join(entry.diff for entry in self.entries if entry.diff)

    def yaml(self) -> str:
        """Summary of the changes as a YAML document."""
        diffs = [
            {
                "kind": entry.ref.kind,
                "namespace": entry.ref.namespace,
                "name": entry.ref.name,
                "action": entry.action.value,
                **({"diff": entry.diff} if entry.diff else {}),
            }
            for entry in self.entries
            if entry.action != DiffAction.UNCHANGED
        ]
        return yaml.dump(
            {"objectSet": self.set_id, "diffs": diffs},
            sort_keys=False,
            explicit_start=True,
        )


def _unique_keys(k1: Mapping[T, Any], k2: Mapping[T, Any]) -> Iterable[T]:
    """Return an ordered set."""
    return {
        **{k: True for k in k1.keys()},
        **{k: True for k in k2.keys()},
    }.keys()


def normalize(doc: dict[str, Any]) -> dict[str, Any]:
    """Drop server owned fields so live objects compare with rendered ones."""
    result = {k: v for k, v in doc.items() if k != "status"}
    metadata = dict(result.get("metadata") or {})
    for key in STRIP_METADATA:
        metadata.pop(key, None)
    metadata.pop("generation", None)
    result["metadata"] = metadata
    return result


def _lines(doc: dict[str, Any] | None) -> list[str]:
    if doc is None:
        return []
    return yaml.dump(normalize(doc), sort_keys=True).splitlines(keepends=True)


def _object_diff(
    ref: ObjectRef,
    a: dict[str, Any] | None,
    b: dict[str, Any] | None,
    n: int,
    limit_bytes: int,
) -> str:
    label = f"{ref.api_version} {ref}"
    diff_text = difflib.unified_diff(
        a=_lines(a), b=_lines(b), fromfile=label, tofile=label, n=n
    )
    result = []
    size = 0
    for line in diff_text:
        size += len(line)
        if limit_bytes and size > limit_bytes:
            result.append(_TRUNCATE + "\n")
            break
        result.append(line)
    return "".join(result)


def compute_diff(
    set_id: str,
    live: Mapping[ObjectRef, dict[str, Any]],
    rendered: Mapping[ObjectRef, dict[str, Any]],
    n: int = DEFAULT_CONTEXT_LINES,
    limit_bytes: int = DEFAULT_LIMIT_BYTES,
) -> ObjectSetDiff:
    """Diff the rendered objects against the live objects of a set.

    `live` may contain objects outside the set; those are only compared
    against, never reported as pruned.
    """
    prune = safe_prune_set(
        [ref for ref, doc in live.items()], rendered.keys(), live, set_id
    )
    result = ObjectSetDiff(set_id=set_id)
    for ref in _unique_keys(rendered, live):
        new = rendered.get(ref)
        old = live.get(ref)
        if new is None:
            if ref in prune:
                diff = _object_diff(ref, old, None, n, limit_bytes)
                result.entries.append(DiffEntry(ref, DiffAction.PRUNED, diff))
            continue
        if old is None:
            action = DiffAction.ADDED
        elif normalize(old) == normalize(new):
            action = DiffAction.UNCHANGED
        else:
            action = DiffAction.CHANGED
        diff = ""
        if action != DiffAction.UNCHANGED:
            diff = _object_diff(ref, old, new, n, limit_bytes)
        result.entries.append(DiffEntry(ref, action, diff))
    _LOGGER.debug(
        "Diff for %s: %d entries, changes=%s",
        set_id,
        len(result.entries),
        result.has_changes,
    )
    return result
