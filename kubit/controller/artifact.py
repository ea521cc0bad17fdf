"""Artifact types for the installation controller."""

from dataclasses import dataclass, field

from kubit.manifest import ObjectRef
from kubit.store.artifact import Artifact


@dataclass(frozen=True, kw_only=True)
class ObjectSetArtifact(Artifact):
    """Artifact representing the object set left by a successful apply.

    Attributes:
        set_id: The applyset id stamped on every member
        members: Members of the set after the apply
        digest: Content digest of the applied package
        generation: The installation generation that was applied
    """

    set_id: str
    members: frozenset[ObjectRef] = field(default_factory=frozenset)
    digest: str | None = None
    generation: int = 0
