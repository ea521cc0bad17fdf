"""Artifact types for resolved packages."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mashumaro import DataClassDictMixin

from kubit.docker_config import Auth, DockerConfig
from kubit.exceptions import UnsupportedFormat

__all__ = [
    "PackageConfig",
    "ResolvedPackage",
]

PACK_KEY = "pack.kubecfg.dev/v1alpha1"
KUBIT_KEY = "kubit.kubecfg.dev/v1alpha1"
IMAGE_LIST_KEY = "oci.image.list"


@dataclass
class PackageConfig(DataClassDictMixin):
    """The config blob of a package artifact."""

    entrypoint: str
    """Path of the entry template relative to the package root."""

    metadata: dict[str, Any] = field(default_factory=dict)
    """Metadata written by the packaging tool, keyed by metadata type."""

    def _section(self, key: str, reference: str) -> dict[str, Any]:
        if not isinstance(section := self.metadata.get(key), dict):
            raise UnsupportedFormat(reference, f"package metadata has no '{key}'")
        return section

    def kubecfg_version(self) -> str | None:
        """Version of the renderer the package was built with, if recorded."""
        if not isinstance(section := self.metadata.get(PACK_KEY), dict):
            return None
        return section.get("version")

    def versioned_kubecfg_image(self, kubecfg_image: str) -> str:
        """Renderer image matching the version the package was built with."""
        if not (version := self.kubecfg_version()):
            raise UnsupportedFormat(
                self.entrypoint, f"package metadata has no '{PACK_KEY}' version"
            )
        return f"{kubecfg_image}:{version}"

    def schema(self, reference: str = "") -> str:
        """JSON schema of the package `spec`, pretty printed."""
        section = self._section(KUBIT_KEY, reference)
        if "schema" not in section:
            raise UnsupportedFormat(reference, "package metadata has no schema")
        return json.dumps(section["schema"], indent=2)

    def images(self, reference: str = "") -> list[str]:
        """OCI images referenced by the rendered manifests."""
        section = self._section(IMAGE_LIST_KEY, reference)
        return [str(image) for image in section.get("images") or []]


@dataclass(frozen=True, kw_only=True)
class ResolvedPackage:
    """A package fetched, validated and extracted for a single attempt."""

    reference: str
    """The reference as written on the installation."""

    digest: str
    """Content digest of the artifact that was actually fetched."""

    path: Path
    """Directory the artifact was extracted into."""

    entrypoint: Path
    """Absolute path of the entry template within `path`."""

    config: PackageConfig

    pinned_reference: str | None = None
    """`oci://registry/repo@digest` for registry packages, None for local ones."""

    registry: str | None = None
    """Registry host the package was pulled from."""

    registry_auth: Auth | None = field(default=None, repr=False, compare=False)
    """Credentials the registry accepted, None for anonymous pulls."""

    @property
    def local(self) -> bool:
        """True for packages read from the local filesystem."""
        return self.pinned_reference is None

    def docker_config(self) -> DockerConfig | None:
        """Docker config holding only the credentials that fetched the package."""
        if self.registry is None or self.registry_auth is None:
            return None
        return DockerConfig.for_auth(self.registry, self.registry_auth)
