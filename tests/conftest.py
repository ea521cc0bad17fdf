"""Shared fixtures for kubit tests."""

from collections.abc import Callable, Generator
import hashlib
import json
from pathlib import Path
from typing import Any

import pytest

from kubit.config import ResolverConfig
from kubit.docker_config import Auth
from kubit.exceptions import AuthFailed, NotFound, RegistryUnavailable
from kubit.package import PackageResolver, RegistryClient, Reference, parse_reference
from kubit.package.registry import OCI_MANIFEST
from kubit.task import TaskService, task_service_context

FILE_MEDIA_TYPE = "application/vnd.kubecfg.bundle.file"
CONFIG_MEDIA_TYPE = "application/vnd.kubecfg.bundle.config.v1+json"


def _digest(content: bytes) -> str:
    return "sha256:" + hashlib.sha256(content).hexdigest()


class FakeRegistry:
    """An in memory OCI registry serving packages pushed by tests."""

    def __init__(self) -> None:
        self.manifests: dict[str, bytes] = {}
        self.blobs: dict[str, bytes] = {}
        self.tags: dict[tuple[str, str, str], str] = {}
        self.accepted_users: set[str] | None = None
        """Users allowed to pull, None for anonymous access."""
        self.unavailable = False
        self.logins: list[str | None] = []

    def push_blob(self, content: bytes) -> dict[str, Any]:
        digest = _digest(content)
        self.blobs[digest] = content
        return {"digest": digest, "size": len(content)}

    def push_manifest(self, image: str, manifest: dict[str, Any]) -> str:
        ref = parse_reference(image)
        body = json.dumps(manifest).encode("utf-8")
        digest = _digest(body)
        self.manifests[digest] = body
        self.tags[(ref.registry, ref.repository, ref.tag or "latest")] = digest
        return digest

    def push(
        self,
        image: str,
        files: dict[str, str] | None = None,
        entrypoint: str = "main.jsonnet",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Push a package and return the digest of its manifest."""
        files = files if files is not None else {entrypoint: "{}\n"}
        config = json.dumps(
            {"entrypoint": entrypoint, "metadata": metadata or {}}
        ).encode("utf-8")
        layers = []
        for name, content in files.items():
            layers.append(
                {
                    "mediaType": FILE_MEDIA_TYPE,
                    **self.push_blob(content.encode("utf-8")),
                    "annotations": {"org.opencontainers.image.title": name},
                }
            )
        manifest = {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": {"mediaType": CONFIG_MEDIA_TYPE, **self.push_blob(config)},
            "layers": layers,
        }
        return self.push_manifest(image, manifest)

    def client(self, ref: Reference, auth: Auth | None) -> RegistryClient:
        self.logins.append(auth.username if auth else None)
        return FakeRegistryClient(self, auth)


class FakeRegistryClient(RegistryClient):
    """RegistryClient reading from a FakeRegistry."""

    def __init__(self, registry: FakeRegistry, auth: Auth | None) -> None:
        self._registry = registry
        self._auth = auth

    def _check(self, ref: Reference) -> None:
        if self._registry.unavailable:
            raise RegistryUnavailable(str(ref), "registry returned 503")
        allowed = self._registry.accepted_users
        if allowed is not None and (
            self._auth is None or self._auth.username not in allowed
        ):
            raise AuthFailed(str(ref), "registry returned 401")

    def head_manifest(self, ref: Reference) -> str:
        self._check(ref)
        if ref.digest:
            if ref.digest not in self._registry.manifests:
                raise NotFound(str(ref), "manifest unknown")
            return ref.digest
        key = (ref.registry, ref.repository, ref.tag or "latest")
        if (digest := self._registry.tags.get(key)) is None:
            raise NotFound(str(ref), "manifest unknown")
        return digest

    def get_manifest(self, ref: Reference) -> tuple[str, bytes]:
        self._check(ref)
        digest = ref.digest or self.head_manifest(ref)
        return OCI_MANIFEST, self._registry.manifests[digest]

    def get_blob(self, ref: Reference, digest: str) -> bytes:
        self._check(ref)
        if (content := self._registry.blobs.get(digest)) is None:
            raise NotFound(str(ref), f"blob {digest} unknown")
        return content


@pytest.fixture(name="task_service", autouse=True)
def task_service_fixture() -> Generator[TaskService, None, None]:
    """Create a task service for testing."""
    with task_service_context() as service:
        yield service


@pytest.fixture(name="registry")
def registry_fixture() -> FakeRegistry:
    """An empty fake registry."""
    return FakeRegistry()


@pytest.fixture(name="resolver")
def resolver_fixture(registry: FakeRegistry, tmp_path: Path) -> PackageResolver:
    """A resolver pulling from the fake registry."""
    return PackageResolver(
        ResolverConfig(workdir=tmp_path / "work"), registry_factory=registry.client
    )


@pytest.fixture(name="app_instance")
def app_instance_fixture() -> Callable[..., dict[str, Any]]:
    """Factory of AppInstance documents."""

    def make(
        image: str = "demo:v1",
        name: str = "demo",
        namespace: str = "default",
        spec: dict[str, Any] | None = None,
        pause: bool = False,
        pull_secrets: list[str] | None = None,
        generation: int | None = None,
    ) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "apiVersion": "kubecfg.dev/v1alpha1",
            "kind": "AppInstance",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "package": {
                    "image": image,
                    "apiVersion": "demo.dev/v1alpha1",
                    "spec": spec or {},
                },
            },
        }
        if pause:
            doc["spec"]["pause"] = True
        if pull_secrets:
            doc["spec"]["imagePullSecrets"] = [{"name": n} for n in pull_secrets]
        if generation is not None:
            doc["metadata"]["generation"] = generation
        return doc

    return make
