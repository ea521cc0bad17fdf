"""Appliers push rendered manifests to a cluster as an object set.

`KubectlApplier` drives `kubectl apply --applyset --prune`. The in-memory
applier implements the same contract over an `InMemoryCluster` and is used
by tests and local demos.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
import copy
import json
import logging
import re
from time import perf_counter
from typing import Any

import aiofiles
import yaml

from . import command
from .diff import DiffAction, DiffEntry, ObjectSetDiff, compute_diff
from .exceptions import InputException
from .manifest import ObjectRef, parse_manifest_dir
from .objectset import (
    CONTAINS_GROUP_KINDS_ANNOTATION,
    PART_OF_LABEL,
    ObjectSet,
    foreign_owners,
    label,
    members_of,
    ownership_report,
    parse_group_kinds,
    safe_prune_set,
)
from .plan import ApplyStep, DIFF_PHASE, UninstallStep
from .result import PhaseResult

__all__ = [
    "Applier",
    "KubectlApplier",
    "InMemoryApplier",
    "InMemoryCluster",
]

_LOGGER = logging.getLogger(__name__)

CLUSTER_SCOPED_KINDS = {
    "Namespace",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "PersistentVolume",
    "StorageClass",
    "PriorityClass",
    "ValidatingWebhookConfiguration",
    "MutatingWebhookConfiguration",
}

# Header kubectl diff prints per object, ending in the temp file name
# `<group>.<version>.<Kind>.<namespace>.<name>`
_DIFF_HEADER = re.compile(r"^diff -u -N \S+ \S*/(?P<file>[^/\s]+)$")


def _with_namespace(doc: dict[str, Any], namespace: str) -> dict[str, Any]:
    """Default the namespace of namespaced objects, as `kubectl -n` does."""
    if doc.get("kind") in CLUSTER_SCOPED_KINDS:
        return doc
    metadata = doc.setdefault("metadata", {})
    if not metadata.get("namespace"):
        metadata["namespace"] = namespace
    return doc


def load_manifests(step: ApplyStep) -> dict[ObjectRef, dict[str, Any]]:
    """Load the manifests of an apply step labelled as set members, in order."""
    result: dict[ObjectRef, dict[str, Any]] = {}
    for doc in parse_manifest_dir(step.input_dir):
        labelled = _with_namespace(label(doc, step.object_set.id), step.namespace)
        ref = ObjectRef.from_doc(labelled)
        if ref in result:
            raise InputException(f"Rendered manifests contain {ref} more than once")
        result[ref] = labelled
    return result


class Applier(ABC):
    """Capability to apply manifests as an object set and inspect the set."""

    @abstractmethod
    async def apply(self, step: ApplyStep) -> PhaseResult:
        """Apply the step's manifests, pruning members no longer rendered."""

    @abstractmethod
    async def diff(self, step: ApplyStep) -> tuple[PhaseResult, ObjectSetDiff]:
        """Compare the step's manifests with live state without applying."""

    @abstractmethod
    async def members(self, object_set: ObjectSet) -> set[ObjectRef]:
        """Return the live members of the object set."""

    @abstractmethod
    async def uninstall(self, step: UninstallStep) -> PhaseResult:
        """Delete every member of the set, then the set bookkeeping."""


class KubectlApplier(Applier):
    """Applier running `kubectl` as a subprocess."""

    def __init__(
        self, env: Mapping[str, str] | None = None, kubectl_bin: str = "kubectl"
    ) -> None:
        """Initialize KubectlApplier with extra environment, e.g. KUBECONFIG."""
        self._env = dict(env or {})
        self._kubectl_bin = kubectl_bin

    def _command(
        self, args: list[str], env: Mapping[str, str] | None = None
    ) -> command.Command:
        return command.Command(args, env={**(env or {}), **self._env})

    async def apply(self, step: ApplyStep) -> PhaseResult:
        start = perf_counter()
        if foreign := await self._foreign_owners(step):
            return PhaseResult(
                phase=step.phase,
                exit_code=1,
                output=ownership_report(foreign),
                elapsed=perf_counter() - start,
            )
        result = await command.capture(self._command(step.command(), step.env))
        return PhaseResult(
            phase=step.phase,
            exit_code=result.returncode,
            output=result.output,
            elapsed=perf_counter() - start,
        )

    async def diff(self, step: ApplyStep) -> tuple[PhaseResult, ObjectSetDiff]:
        rendered = load_manifests(step)
        start = perf_counter()
        labelled = await command.capture(self._command(step.label_command()))
        if not labelled.success:
            return (
                PhaseResult(DIFF_PHASE, labelled.returncode, labelled.output),
                ObjectSetDiff(set_id=step.object_set.id),
            )
        # kubectl diff exits 1 when there are differences
        result = await self._command(step.diff_command(), step.env).exec(
            labelled.stdout.encode("utf-8")
        )
        exit_code = 0 if result.returncode == 1 else result.returncode
        phase = PhaseResult(
            DIFF_PHASE, exit_code, result.output, elapsed=perf_counter() - start
        )
        object_set_diff = ObjectSetDiff(set_id=step.object_set.id)
        if exit_code != 0:
            return phase, object_set_diff
        changed = _parse_kubectl_diff(result.stdout)
        live = await self.members(step.object_set)
        for ref in rendered:
            key = _diff_key(ref)
            if ref not in live:
                action = DiffAction.ADDED
            elif key in changed:
                action = DiffAction.CHANGED
            else:
                action = DiffAction.UNCHANGED
            entry = DiffEntry(ref, action, changed.get(key, ""))
            object_set_diff.entries.append(entry)
        for ref in sorted(live - rendered.keys()):
            object_set_diff.entries.append(DiffEntry(ref, DiffAction.PRUNED))
        return phase, object_set_diff

    async def _get_json(self, args: list[str]) -> dict[str, Any] | None:
        out = await command.run(
            self._command(
                [self._kubectl_bin, "get", *args, "-o", "json", "--ignore-not-found"]
            )
        )
        if not out.strip():
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError as err:
            raise InputException(f"Unable to parse kubectl output: {err}") from err

    async def _foreign_owners(self, step: ApplyStep) -> dict[ObjectRef, str]:
        """Rendered objects that are live members of another object set."""
        # The server may serve an object under another version than rendered
        rendered = {
            (ref.group, ref.kind, ref.namespace, ref.name): ref
            for ref in load_manifests(step)
        }
        selector = f"{PART_OF_LABEL},{PART_OF_LABEL}!={step.object_set.id}"
        result: dict[ObjectRef, str] = {}
        for group, kind in sorted({(ref.group, ref.kind) for ref in rendered.values()}):
            resource = f"{kind}.{group}" if group else kind
            listing = await command.capture(
                self._command(
                    [
                        self._kubectl_bin,
                        "get",
                        resource,
                        "--all-namespaces",
                        "-l",
                        selector,
                        "-o",
                        "json",
                    ]
                )
            )
            if not listing.success:
                # Kinds the cluster does not serve yet, e.g. from a CRD in
                # the same rendering, have no live objects
                _LOGGER.debug("Unable to list %s: %s", resource, listing.output)
                continue
            try:
                items = json.loads(listing.stdout or "{}").get("items") or []
            except json.JSONDecodeError as err:
                raise InputException(f"Unable to parse kubectl output: {err}") from err
            for live_ref, owner in foreign_owners(items, step.object_set.id).items():
                key = (live_ref.group, live_ref.kind, live_ref.namespace, live_ref.name)
                if (ref := rendered.get(key)) is not None:
                    result[ref] = owner
        return result

    async def _group_kinds(self, object_set: ObjectSet) -> list[tuple[str, str]]:
        parent = await self._get_json(
            ["secret", object_set.name, "-n", object_set.namespace]
        )
        if parent is None:
            return []
        annotations = (parent.get("metadata") or {}).get("annotations") or {}
        return parse_group_kinds(annotations.get(CONTAINS_GROUP_KINDS_ANNOTATION))

    async def _list_members(
        self, object_set: ObjectSet, group_kinds: Iterable[tuple[str, str]]
    ) -> set[ObjectRef]:
        result: set[ObjectRef] = set()
        for group, kind in group_kinds:
            resource = f"{kind}.{group}" if group else kind
            listing = await self._get_json(
                [resource, "--all-namespaces", "-l", object_set.selector]
            )
            if listing:
                result |= members_of(listing.get("items") or [], object_set.id)
        return result

    async def members(self, object_set: ObjectSet) -> set[ObjectRef]:
        return await self._list_members(
            object_set, await self._group_kinds(object_set)
        )

    async def uninstall(self, step: UninstallStep) -> PhaseResult:
        start = perf_counter()
        group_kinds = await self._group_kinds(step.object_set)
        step.cleanup_dir.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(step.cleanup_path, mode="w") as cleanup_file:
            await cleanup_file.write(yaml.dump(step.cleanup_doc(), sort_keys=False))
        prune, delete_cleanup, delete_parent = step.commands()
        outputs = []
        for args in (prune, delete_cleanup):
            result = await command.capture(self._command(args, step.env))
            outputs.append(result.output)
            if not result.success:
                return PhaseResult(step.phase, result.returncode, "".join(outputs))
        remaining = {
            ref
            for ref in await self._list_members(step.object_set, group_kinds)
            if not (ref.kind == "ConfigMap" and ref.name == step.cleanup_name)
        }
        if remaining:
            outputs.append(
                "Objects still present after pruning: "
                + ", ".join(str(ref) for ref in sorted(remaining))
                + "\n"
            )
            return PhaseResult(step.phase, 1, "".join(outputs))
        result = await command.capture(self._command(delete_parent, step.env))
        outputs.append(result.output)
        return PhaseResult(
            step.phase,
            result.returncode,
            "".join(outputs),
            elapsed=perf_counter() - start,
        )


def _diff_key(ref: ObjectRef) -> str:
    group = ref.group or ""
    return f"{group}.{ref.version}.{ref.kind}.{ref.namespace or ''}.{ref.name}"


def _parse_kubectl_diff(output: str) -> dict[str, str]:
    """Split `kubectl diff` output into per object sections keyed by file name."""
    sections: dict[str, list[str]] = {}
    current: list[str] | None = None
    for line in output.splitlines(keepends=True):
        if match := _DIFF_HEADER.match(line.rstrip("\n")):
            current = sections.setdefault(match.group("file"), [])
            continue
        if current is not None:
            current.append(line)
    return {key: "".join(lines) for key, lines in sections.items()}


class InMemoryCluster:
    """A minimal fake of cluster state keyed by object identity."""

    def __init__(self, objects: Iterable[dict[str, Any]] = ()) -> None:
        self._objects: dict[ObjectRef, dict[str, Any]] = {}
        self.refuse_delete: set[ObjectRef] = set()
        """Objects that fail to delete, like objects stuck on a finalizer."""
        self.mutations = 0
        for doc in objects:
            self.put(doc)

    def put(self, doc: dict[str, Any]) -> ObjectRef:
        ref = ObjectRef.from_doc(doc)
        self._objects[ref] = copy.deepcopy(doc)
        self.mutations += 1
        return ref

    def get(self, ref: ObjectRef) -> dict[str, Any] | None:
        return copy.deepcopy(self._objects.get(ref))

    def delete(self, ref: ObjectRef) -> bool:
        if ref in self.refuse_delete:
            return False
        if self._objects.pop(ref, None) is not None:
            self.mutations += 1
        return True

    def objects(self) -> dict[ObjectRef, dict[str, Any]]:
        return copy.deepcopy(self._objects)

    def snapshot(self) -> dict[ObjectRef, str]:
        """Serialized state, for before and after comparisons."""
        return {
            ref: json.dumps(doc, sort_keys=True) for ref, doc in self._objects.items()
        }

    def __contains__(self, ref: object) -> bool:
        return ref in self._objects


class InMemoryApplier(Applier):
    """Applier acting on an InMemoryCluster with applyset semantics."""

    def __init__(self, cluster: InMemoryCluster | None = None) -> None:
        self.cluster = cluster or InMemoryCluster()

    async def apply(self, step: ApplyStep) -> PhaseResult:
        rendered = load_manifests(step)
        object_set = step.object_set
        live = self.cluster.objects()
        if foreign := foreign_owners(
            (live[ref] for ref in rendered if ref in live), object_set.id
        ):
            return PhaseResult(
                phase=step.phase, exit_code=1, output=ownership_report(foreign)
            )
        previous = members_of(live.values(), object_set.id)
        lines = []
        for ref, doc in rendered.items():
            existing = live.get(ref)
            self.cluster.put(doc)
            verb = "unchanged" if existing == doc else "serverside-applied"
            lines.append(f"{ref.kind.lower()}/{ref.name} {verb}")
        self.cluster.put(object_set.parent_doc(rendered.keys()))
        failed = []
        prune = safe_prune_set(previous, rendered.keys(), live, object_set.id)
        for ref in sorted(prune):
            if self.cluster.delete(ref):
                lines.append(f"{ref.kind.lower()}/{ref.name} pruned")
            else:
                failed.append(ref)
                lines.append(f"error: {ref.kind.lower()}/{ref.name} not pruned")
        return PhaseResult(
            phase=step.phase,
            exit_code=1 if failed else 0,
            output="\n".join(lines) + "\n",
        )

    async def diff(self, step: ApplyStep) -> tuple[PhaseResult, ObjectSetDiff]:
        rendered = load_manifests(step)
        result = compute_diff(step.object_set.id, self.cluster.objects(), rendered)
        return PhaseResult(DIFF_PHASE, 0, result.text()), result

    async def members(self, object_set: ObjectSet) -> set[ObjectRef]:
        return members_of(self.cluster.objects().values(), object_set.id)

    async def uninstall(self, step: UninstallStep) -> PhaseResult:
        members = await self.members(step.object_set)
        lines = []
        failed = []
        for ref in sorted(members):
            if self.cluster.delete(ref):
                lines.append(f"{ref.kind.lower()}/{ref.name} deleted")
            else:
                failed.append(ref)
                lines.append(f"error: {ref.kind.lower()}/{ref.name} not deleted")
        if not failed:
            self.cluster.delete(step.object_set.parent)
        return PhaseResult(
            phase=step.phase,
            exit_code=1 if failed else 0,
            output="\n".join(lines) + "\n",
        )
