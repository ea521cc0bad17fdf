"""Representation of the resources kubit reads and writes.

An `Installation` is the python view of an `AppInstance` custom resource. It
is parsed from the raw kubernetes object and can be rendered back into the
overlay document handed to the renderer.
"""

import copy
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, ClassVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "read_installation",
    "parse_manifest_dir",
    "dump_manifests",
    "NamedResource",
    "ObjectRef",
    "Installation",
    "InstallationStatus",
    "Condition",
    "Package",
]

_LOGGER = logging.getLogger(__name__)


APP_INSTANCE_GROUP = "kubecfg.dev"
APP_INSTANCE_VERSION = "v1alpha1"
APP_INSTANCE_API_VERSION = f"{APP_INSTANCE_GROUP}/{APP_INSTANCE_VERSION}"
APP_INSTANCE_KIND = "AppInstance"
APP_INSTANCE_PLURAL = "appinstances"

# Finalizer that holds an AppInstance until its object set is uninstalled.
UNINSTALL_FINALIZER = "kubecfg.dev/uninstall"

# Condition types written to status
CONDITION_READY = "Ready"
CONDITION_PROGRESSING = "Progressing"
CONDITION_FAILED = "Failed"

# Fields that are owned by the API server and dropped from the overlay
STRIP_METADATA = [
    "managedFields",
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
]


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    def yaml(self) -> str:
        """Return a YAML string representation of compact_dict."""
        return yaml.dump(self.compact_dict(), sort_keys=False, explicit_start=True)

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass(frozen=True, order=True)
class ObjectRef:
    """Identity of a single cluster object owned by an object set."""

    group: str
    version: str
    kind: str
    namespace: str | None
    name: str

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "ObjectRef":
        """Build the reference for a raw kubernetes object."""
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        metadata = doc.get("metadata") or {}
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        group, _, version = api_version.rpartition("/")
        return cls(
            group=group,
            version=version,
            kind=kind,
            namespace=metadata.get("namespace"),
            name=name,
        )

    @property
    def api_version(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @property
    def group_kind(self) -> str:
        """Group and kind in the `Kind.group` form used by applyset annotations."""
        if self.group:
            return f"{self.kind}.{self.group}"
        return self.kind

    @property
    def named_resource(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    def __str__(self) -> str:
        return str(self.named_resource)


@dataclass
class Package(BaseManifest):
    """The package an AppInstance installs."""

    image: str
    """Reference to the package artifact e.g. `ghcr.io/org/pkg:v1`."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    """API version declared by the package."""

    spec: dict[str, Any] = field(default_factory=dict)
    """Free form configuration payload, passed through to the renderer."""


@dataclass
class Condition(BaseManifest):
    """A status condition on an AppInstance."""

    type: str
    """Condition type e.g. `Ready`."""

    status: str
    """One of `True`, `False` or `Unknown`."""

    reason: str
    """Machine readable reason for the last transition."""

    message: str = ""
    """Human readable details."""

    last_transition_time: str | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )


@dataclass
class InstallationStatus(BaseManifest):
    """Observed state of an AppInstance, written by the controller."""

    last_logs: dict[str, str] | None = field(
        metadata=field_options(alias="lastLogs"), default=None
    )
    """Captured output of the last attempt, keyed by phase."""

    observed_generation: int | None = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )
    """The spec generation reconciled by the last completed attempt."""

    conditions: list[Condition] = field(default_factory=list)

    def condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the given type, if present."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    @property
    def ready(self) -> bool:
        return (
            cond := self.condition(CONDITION_READY)
        ) is not None and cond.status == "True"


@dataclass
class Installation(BaseManifest):
    """A representation of an AppInstance resource."""

    kind: ClassVar[str] = APP_INSTANCE_KIND
    """The kind of the object."""

    name: str
    """The name of the AppInstance."""

    namespace: str
    """The namespace of the AppInstance."""

    package: Package
    """The package to install."""

    image_pull_secrets: list[str] = field(
        metadata=field_options(alias="imagePullSecrets"), default_factory=list
    )
    """Ordered names of secrets holding registry credentials."""

    pause: bool = False
    """When set, the controller performs no mutation for this installation."""

    generation: int = 0
    """The spec generation, bumped by the API server on spec changes."""

    finalizers: list[str] = field(default_factory=list)
    """Finalizers currently set on the object."""

    deleting: bool = False
    """True once a deletion has been requested."""

    status: InstallationStatus | None = field(
        metadata={"serialize": "omit"}, default=None
    )
    """The last written status."""

    contents: dict[str, Any] | None = field(
        metadata={"serialize": "omit"}, default=None
    )
    """The raw AppInstance document this was parsed from."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Installation":
        """Parse an Installation from an AppInstance kubernetes object."""
        _check_version(doc, APP_INSTANCE_GROUP)
        if doc.get("kind") != APP_INSTANCE_KIND:
            raise InputException(f"Invalid {cls} expected kind AppInstance: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise InputException(f"Invalid {cls} missing metadata.namespace: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        if not (package := spec.get("package")):
            raise InputException(f"Invalid {cls} missing spec.package: {doc}")
        if not package.get("image"):
            raise InputException(f"Invalid {cls} missing spec.package.image: {doc}")
        pull_secrets: list[str] = []
        for secret_ref in spec.get("imagePullSecrets") or ():
            if not isinstance(secret_ref, dict) or not secret_ref.get("name"):
                raise InputException(
                    f"Invalid {cls} imagePullSecrets entry missing name: {doc}"
                )
            pull_secrets.append(secret_ref["name"])
        status: InstallationStatus | None = None
        if status_doc := doc.get("status"):
            status = InstallationStatus.from_dict(status_doc)
        return cls(
            name=name,
            namespace=namespace,
            package=Package(
                image=package["image"],
                api_version=package.get("apiVersion", ""),
                spec=package.get("spec") or {},
            ),
            image_pull_secrets=pull_secrets,
            pause=bool(spec.get("pause", False)),
            generation=int(metadata.get("generation") or 0),
            finalizers=list(metadata.get("finalizers") or []),
            deleting=metadata.get("deletionTimestamp") is not None,
            status=status,
            contents=doc,
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(APP_INSTANCE_KIND, self.namespace, self.name)

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    def spec_doc(self) -> dict[str, Any]:
        """Return the spec as it appears on the AppInstance resource."""
        spec: dict[str, Any] = {"package": self.package.to_dict()}
        if self.image_pull_secrets:
            spec["imagePullSecrets"] = [
                {"name": name} for name in self.image_pull_secrets
            ]
        if self.pause:
            spec["pause"] = True
        return spec

    def overlay(self) -> dict[str, Any]:
        """Return the configuration overlay passed to the renderer.

        This is the AppInstance object itself with status and server owned
        metadata removed.
        """
        if self.contents is not None:
            doc = copy.deepcopy(self.contents)
        else:
            doc = {
                "apiVersion": APP_INSTANCE_API_VERSION,
                "kind": APP_INSTANCE_KIND,
                "metadata": {"name": self.name, "namespace": self.namespace},
            }
        doc["spec"] = self.spec_doc()
        doc.pop("status", None)
        metadata = doc.setdefault("metadata", {})
        for key in STRIP_METADATA:
            metadata.pop(key, None)
        return doc


async def read_installation(path: Path) -> Installation:
    """Read an Installation from a YAML file holding one AppInstance."""
    try:
        async with aiofiles.open(str(path)) as installation_file:
            content = await installation_file.read()
    except FileNotFoundError as err:
        raise InputException(f"AppInstance file not found: {path}") from err
    try:
        docs = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse AppInstance file {path}: {err}") from err
    if len(docs) != 1:
        raise InputException(
            f"Expected exactly one AppInstance in {path} but found {len(docs)}"
        )
    return Installation.parse_doc(docs[0])


def _flatten(doc: dict[str, Any]) -> list[dict[str, Any]]:
    if doc.get("kind") == "List" and isinstance(items := doc.get("items"), list):
        return [item for item in items if isinstance(item, dict)]
    return [doc]


def parse_manifest_dir(path: Path) -> list[dict[str, Any]]:
    """Load every object from a rendered manifest directory.

    Files are read in name order, which is the order the renderer emitted the
    resources in.
    """
    objects: list[dict[str, Any]] = []
    files = sorted(
        (p for p in path.rglob("*") if p.is_file()),
        key=lambda p: str(p.relative_to(path)),
    )
    for manifest_file in files:
        if manifest_file.suffix not in (".yaml", ".yml", ".json"):
            continue
        try:
            docs = list(yaml.safe_load_all(manifest_file.read_text()))
        except yaml.YAMLError as err:
            raise InputException(
                f"Unable to parse rendered manifest {manifest_file}: {err}"
            ) from err
        for doc in docs:
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise InputException(
                    f"Rendered manifest {manifest_file} is not an object: {doc}"
                )
            objects.extend(_flatten(doc))
    _LOGGER.debug("Loaded %d objects from %s", len(objects), path)
    return objects


def dump_manifests(objects: list[dict[str, Any]]) -> str:
    """Serialize objects as a multi document YAML stream."""
    return yaml.dump_all(objects, sort_keys=False, explicit_start=True)
