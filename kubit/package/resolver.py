"""Package resolver.

Fetches a package artifact, validates it and extracts it into a directory
owned by the current attempt. Registry packages are always pinned to the
digest the registry reports before anything else is fetched, and every blob
is checked against the digest the manifest records for it.
"""

import asyncio
from collections.abc import Callable, Sequence
import hashlib
import io
import json
import logging
from pathlib import Path
import shutil
import tarfile
from typing import Any

from kubit.config import ResolverConfig
from kubit.context import trace_context
from kubit.docker_config import Auth, DockerConfig
from kubit.exceptions import (
    AuthFailed,
    CorruptArtifact,
    InputException,
    UnsupportedFormat,
)

from .artifact import PackageConfig, ResolvedPackage
from .reference import FILE_SCHEME, OCI_SCHEME, Reference, parse_reference
from .registry import (
    INDEX_MEDIA_TYPES,
    MANIFEST_MEDIA_TYPES,
    OrasRegistryClient,
    RegistryClient,
)

__all__ = [
    "PackageResolver",
    "resolve",
]

_LOGGER = logging.getLogger(__name__)

TITLE_ANNOTATION = "org.opencontainers.image.title"
TAR_MEDIA_SUFFIXES = (".tar", ".tar+gzip", ".tar.gzip", ".tar+gz")

RegistryFactory = Callable[[Reference, Auth | None], RegistryClient]


def _sha256(content: bytes) -> str:
    return "sha256:" + hashlib.sha256(content).hexdigest()


def _verify(ref: Reference, what: str, digest: str, content: bytes) -> None:
    algorithm = digest.partition(":")[0]
    if algorithm != "sha256":
        raise UnsupportedFormat(str(ref), f"{what} uses digest algorithm {algorithm}")
    if (actual := _sha256(content)) != digest:
        raise CorruptArtifact(
            str(ref), f"{what} digest mismatch: expected {digest}, got {actual}"
        )


def _safe_path(root: Path, relative: str, ref: str) -> Path:
    path = (root / relative).resolve()
    if not path.is_relative_to(root.resolve()):
        raise CorruptArtifact(ref, f"path '{relative}' escapes the package root")
    return path


def _parse_config(ref: str, content: bytes) -> PackageConfig:
    try:
        doc = json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise CorruptArtifact(ref, f"invalid package config: {err}") from err
    if not isinstance(doc, dict) or not isinstance(doc.get("entrypoint"), str):
        raise UnsupportedFormat(ref, "package config has no entrypoint")
    metadata = doc.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise CorruptArtifact(ref, "package config metadata is not an object")
    return PackageConfig(entrypoint=doc["entrypoint"], metadata=metadata)


def _parse_manifest(ref: Reference, media_type: str, body: bytes) -> dict[str, Any]:
    try:
        manifest = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise CorruptArtifact(str(ref), f"invalid manifest: {err}") from err
    if not isinstance(manifest, dict):
        raise CorruptArtifact(str(ref), "manifest is not an object")
    media_type = manifest.get("mediaType") or media_type
    if media_type in INDEX_MEDIA_TYPES or "manifests" in manifest:
        raise UnsupportedFormat(str(ref), "Unsupported manifest type: Index")
    if media_type and media_type not in MANIFEST_MEDIA_TYPES:
        raise UnsupportedFormat(str(ref), f"Unsupported manifest type: {media_type}")
    if not isinstance(manifest.get("config"), dict) or not isinstance(
        manifest.get("layers"), list
    ):
        raise CorruptArtifact(str(ref), "manifest is missing config or layers")
    return manifest


def _extract_layer(
    ref: Reference, layer: dict[str, Any], content: bytes, root: Path
) -> None:
    media_type = layer.get("mediaType", "")
    title = (layer.get("annotations") or {}).get(TITLE_ANNOTATION)
    if media_type.endswith(TAR_MEDIA_SUFFIXES):
        try:
            with tarfile.open(fileobj=io.BytesIO(content), mode="r:*") as tar:
                tar.extractall(root, filter="data")
        except (tarfile.TarError, OSError) as err:
            raise CorruptArtifact(str(ref), f"invalid layer archive: {err}") from err
        return
    if not title:
        raise UnsupportedFormat(
            str(ref), f"layer {layer.get('digest')} has no title and is not a tar"
        )
    path = _safe_path(root, title, str(ref))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


def _default_registry_factory(insecure: bool) -> RegistryFactory:
    def factory(ref: Reference, auth: Auth | None) -> RegistryClient:
        return OrasRegistryClient(ref.registry, auth, insecure=insecure)

    return factory


class PackageResolver:
    """Resolves package references into extracted packages."""

    def __init__(
        self,
        config: ResolverConfig | None = None,
        registry_factory: RegistryFactory | None = None,
    ) -> None:
        self._config = config or ResolverConfig()
        self._registry_factory = registry_factory or _default_registry_factory(
            self._config.insecure
        )

    def _auths(
        self, ref: Reference, credentials: Sequence[DockerConfig]
    ) -> list[Auth | None]:
        """Credentials to try for the registry, in order."""
        if self._config.skip_auth or not credentials:
            return [None]
        result: list[Auth | None] = []
        for docker_config in credentials:
            auth = docker_config.get_auth(ref.registry)
            if auth not in result:
                result.append(auth)
        return result

    def _with_credentials(
        self,
        ref: Reference,
        credentials: Sequence[DockerConfig],
        fetch: Callable[[RegistryClient, Auth | None], Any],
    ) -> Any:
        """Call `fetch` with each credential until one is not rejected."""
        auths = self._auths(ref, credentials)
        last_error = ""
        for index, auth in enumerate(auths):
            client = self._registry_factory(ref, auth)
            try:
                return fetch(client, auth)
            except AuthFailed as err:
                _LOGGER.info(
                    "Credential %d of %d for %s was rejected: %s",
                    index + 1,
                    len(auths),
                    ref.registry,
                    err,
                )
                last_error = str(err)
        raise AuthFailed(
            str(ref), f"all {len(auths)} credentials were rejected ({last_error})"
        )

    def _fetch_manifest(
        self, client: RegistryClient, ref: Reference
    ) -> tuple[Reference, dict[str, Any]]:
        digest = client.head_manifest(ref)
        if ref.digest and ref.digest != digest:
            raise CorruptArtifact(
                str(ref), f"registry returned digest {digest}, expected {ref.digest}"
            )
        pinned = ref.pinned(digest)
        media_type, body = client.get_manifest(pinned)
        _verify(pinned, "manifest", digest, body)
        return pinned, _parse_manifest(pinned, media_type, body)

    def _fetch_config(
        self, client: RegistryClient, ref: Reference, manifest: dict[str, Any]
    ) -> PackageConfig:
        config_digest = manifest["config"].get("digest", "")
        content = client.get_blob(ref, config_digest)
        _verify(ref, "config", config_digest, content)
        return _parse_config(str(ref), content)

    def _pull(
        self, client: RegistryClient, ref: Reference, root: Path, auth: Auth | None
    ) -> ResolvedPackage:
        pinned, manifest = self._fetch_manifest(client, ref)
        config = self._fetch_config(client, pinned, manifest)
        for layer in manifest["layers"]:
            digest = layer.get("digest", "")
            content = client.get_blob(pinned, digest)
            _verify(pinned, f"layer {digest}", digest, content)
            _extract_layer(pinned, layer, content, root)
        entrypoint = _safe_path(root, config.entrypoint, str(pinned))
        if not entrypoint.is_file():
            raise CorruptArtifact(
                str(pinned), f"entrypoint '{config.entrypoint}' is not in the package"
            )
        digest = pinned.digest or ""
        return ResolvedPackage(
            reference=str(ref),
            digest=digest,
            path=root,
            entrypoint=entrypoint,
            config=config,
            pinned_reference=f"{OCI_SCHEME}{pinned.registry}/{pinned.repository}@{digest}",
            registry=pinned.registry,
            registry_auth=auth,
        )

    def _resolve_local(self, artifact_ref: str, root: Path) -> ResolvedPackage:
        source = Path(artifact_ref.removeprefix(FILE_SCHEME)).expanduser()
        if not source.is_file():
            raise InputException(f"Local package entrypoint {source} does not exist")
        source_dir = source.parent
        digest = hashlib.sha256()
        for path in sorted(p for p in source_dir.rglob("*") if p.is_file()):
            digest.update(str(path.relative_to(source_dir)).encode("utf-8"))
            digest.update(path.read_bytes())
        shutil.copytree(source_dir, root, dirs_exist_ok=True)
        return ResolvedPackage(
            reference=artifact_ref,
            digest=f"sha256:{digest.hexdigest()}",
            path=root,
            entrypoint=root / source.name,
            config=PackageConfig(entrypoint=source.name),
        )

    async def resolve(
        self,
        artifact_ref: str,
        credentials: Sequence[DockerConfig],
        root: Path,
    ) -> ResolvedPackage:
        """Fetch and extract the package into `root`, which must be fresh.

        Raises a ResolutionError subclass when the artifact cannot be used.
        """
        root.mkdir(parents=True, exist_ok=True)
        if any(root.iterdir()):
            raise ValueError(f"Package extraction directory {root} is not empty")
        with trace_context(f"Resolve '{artifact_ref}'"):
            if artifact_ref.startswith(FILE_SCHEME):
                return await asyncio.to_thread(
                    self._resolve_local, artifact_ref, root
                )
            ref = parse_reference(artifact_ref)
            resolved: ResolvedPackage = await asyncio.to_thread(
                self._with_credentials,
                ref,
                credentials,
                lambda client, auth: self._pull(client, ref, root, auth),
            )
        _LOGGER.info("Resolved package %s to %s", artifact_ref, resolved.digest)
        return resolved

    async def fetch_config(
        self, artifact_ref: str, credentials: Sequence[DockerConfig]
    ) -> PackageConfig:
        """Fetch only the package config, without pulling layers."""
        ref = parse_reference(artifact_ref)

        def fetch(client: RegistryClient, auth: Auth | None) -> PackageConfig:
            pinned, manifest = self._fetch_manifest(client, ref)
            return self._fetch_config(client, pinned, manifest)

        with trace_context(f"Fetch config '{artifact_ref}'"):
            return await asyncio.to_thread(
                self._with_credentials, ref, credentials, fetch
            )


async def resolve(
    artifact_ref: str,
    pull_secrets: Sequence[DockerConfig],
    root: Path,
    config: ResolverConfig | None = None,
) -> ResolvedPackage:
    """Resolve a package with the default registry client."""
    return await PackageResolver(config).resolve(artifact_ref, pull_secrets, root)
