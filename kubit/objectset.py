"""Tracking of the cluster objects owned by an installation.

Each installation owns an object set, identified the same way `kubectl apply
--applyset` identifies an ApplySet: by hashing the identity of a parent
`Secret` named after the installation. Every applied object carries the
`applyset.kubernetes.io/part-of` label with the set id, and pruning is
restricted to objects carrying that label.
"""

import base64
import copy
import hashlib
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .exceptions import ObjectSetCollisionError
from .manifest import NamedResource, ObjectRef

__all__ = [
    "ObjectSet",
    "ObjectSetRegistry",
    "id_for",
    "object_set_for",
    "label",
    "is_member",
    "members_of",
    "compute_prune_set",
    "safe_prune_set",
    "foreign_owners",
    "ownership_report",
]

_LOGGER = logging.getLogger(__name__)

PART_OF_LABEL = "applyset.kubernetes.io/part-of"
PARENT_ID_LABEL = "applyset.kubernetes.io/id"
CONTAINS_GROUP_KINDS_ANNOTATION = "applyset.kubernetes.io/contains-group-kinds"
TOOLING_ANNOTATION = "applyset.kubernetes.io/tooling"

PARENT_KIND = "Secret"
PARENT_GROUP = ""
APPLYSET_VERSION = "v1"


def id_for(resource_id: NamedResource) -> str:
    """Return the object set id for an installation.

    The id only depends on the namespace and name of the installation so it
    is stable for the lifetime of the installation.
    """
    if not resource_id.namespace:
        raise ValueError(f"Installation {resource_id} has no namespace")
    key = f"{resource_id.name}.{resource_id.namespace}.{PARENT_KIND}.{PARENT_GROUP}"
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return f"applyset-{encoded}-{APPLYSET_VERSION}"


@dataclass(frozen=True)
class ObjectSet:
    """The object set owned by one installation."""

    id: str
    """The applyset id stamped on every member."""

    parent: ObjectRef
    """The Secret holding the set bookkeeping."""

    @property
    def namespace(self) -> str:
        return self.parent.namespace or ""

    @property
    def name(self) -> str:
        return self.parent.name

    @property
    def selector(self) -> str:
        """Label selector matching the members of the set."""
        return f"{PART_OF_LABEL}={self.id}"

    def parent_doc(self, members: Iterable[ObjectRef] = ()) -> dict[str, Any]:
        """Return the parent Secret recording the group kinds of the members."""
        return {
            "apiVersion": "v1",
            "kind": PARENT_KIND,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": {PARENT_ID_LABEL: self.id},
                "annotations": {
                    CONTAINS_GROUP_KINDS_ANNOTATION: ",".join(group_kinds(members)),
                    TOOLING_ANNOTATION: "kubectl/v1.30",
                },
            },
        }


def object_set_for(resource_id: NamedResource) -> ObjectSet:
    """Return the object set of an installation."""
    return ObjectSet(
        id=id_for(resource_id),
        parent=ObjectRef(
            group=PARENT_GROUP,
            version="v1",
            kind=PARENT_KIND,
            namespace=resource_id.namespace,
            name=resource_id.name,
        ),
    )


def group_kinds(members: Iterable[ObjectRef]) -> list[str]:
    """Sorted distinct group kinds of the members."""
    return sorted({member.group_kind for member in members})


def parse_group_kinds(value: str | None) -> list[tuple[str, str]]:
    """Parse a contains-group-kinds annotation into (group, kind) pairs."""
    result = []
    for item in (value or "").split(","):
        if not (item := item.strip()):
            continue
        kind, _, group = item.partition(".")
        result.append((group, kind))
    return result


def label(doc: dict[str, Any], set_id: str) -> dict[str, Any]:
    """Return a copy of the object labelled as a member of the set."""
    result = copy.deepcopy(doc)
    metadata = result.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    labels[PART_OF_LABEL] = set_id
    metadata["labels"] = labels
    return result


def is_member(doc: dict[str, Any], set_id: str) -> bool:
    """Return True if the object is labelled with the set id."""
    labels = (doc.get("metadata") or {}).get("labels") or {}
    return labels.get(PART_OF_LABEL) == set_id


def members_of(objects: Iterable[dict[str, Any]], set_id: str) -> set[ObjectRef]:
    """Return the members of the set among live objects."""
    return {ObjectRef.from_doc(doc) for doc in objects if is_member(doc, set_id)}


def compute_prune_set(
    previous: Iterable[ObjectRef], new: Iterable[ObjectRef]
) -> set[ObjectRef]:
    """Members of the previous apply that are absent from the new rendering."""
    return set(previous) - set(new)


def safe_prune_set(
    previous: Iterable[ObjectRef],
    new: Iterable[ObjectRef],
    live: Mapping[ObjectRef, dict[str, Any]],
    set_id: str,
) -> set[ObjectRef]:
    """Prune candidates restricted to live objects labelled with `set_id`.

    Objects owned by another set, or not labelled at all, are never returned
    even if they share kind, namespace and name with a previous member.
    """
    result = set()
    for ref in compute_prune_set(previous, new):
        if (doc := live.get(ref)) is None:
            continue
        if not is_member(doc, set_id):
            _LOGGER.warning(
                "Not pruning %s: it is not labelled as a member of %s", ref, set_id
            )
            continue
        result.add(ref)
    return result


def foreign_owners(
    live: Iterable[dict[str, Any]], set_id: str
) -> dict[ObjectRef, str]:
    """Return the live objects labelled as members of a set other than `set_id`.

    The value is the id of the owning set. Applying such an object would move
    it into `set_id` and let the next prune of `set_id` delete it.
    """
    result = {}
    for doc in live:
        labels = (doc.get("metadata") or {}).get("labels") or {}
        owner = labels.get(PART_OF_LABEL)
        if owner and owner != set_id:
            result[ObjectRef.from_doc(doc)] = owner
    return result


def ownership_report(foreign: Mapping[ObjectRef, str]) -> str:
    """Apply output refusing to adopt objects owned by other sets."""
    return "".join(
        f"error: {ref.kind.lower()}/{ref.name} in namespace {ref.namespace} "
        f"is a member of object set {owner}, refusing to adopt it\n"
        for ref, owner in sorted(foreign.items())
    )


class ObjectSetRegistry:
    """Remembers the installation behind every object set id handed out."""

    def __init__(self) -> None:
        self._owners: dict[str, NamedResource] = {}

    def register(self, resource_id: NamedResource) -> ObjectSet:
        """Return the object set for an installation, recording its owner.

        Raises ObjectSetCollisionError if another installation already owns
        the same id.
        """
        object_set = object_set_for(resource_id)
        owner = self._owners.setdefault(object_set.id, resource_id)
        if owner != resource_id:
            raise ObjectSetCollisionError(
                f"Object set id {object_set.id} of {resource_id} is already owned by {owner}"
            )
        return object_set

    def forget(self, resource_id: NamedResource) -> None:
        """Drop the record for an uninstalled installation."""
        self._owners.pop(id_for(resource_id), None)

    def __len__(self) -> int:
        return len(self._owners)
