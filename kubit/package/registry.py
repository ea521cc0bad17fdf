"""Registry access for package artifacts.

`OrasRegistryClient` talks to an OCI registry through the `oras` client,
which takes care of token negotiation. The methods are blocking and are
called from a worker thread by the resolver.
"""

from abc import ABC, abstractmethod
import hashlib
import logging

import requests
from oras.client import OrasClient

from kubit.docker_config import Auth
from kubit.exceptions import (
    AuthFailed,
    NotFound,
    RegistryUnavailable,
    ResolutionError,
)

from .reference import Reference

__all__ = [
    "RegistryClient",
    "OrasRegistryClient",
    "MANIFEST_MEDIA_TYPES",
    "INDEX_MEDIA_TYPES",
]

_LOGGER = logging.getLogger(__name__)

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

MANIFEST_MEDIA_TYPES = [OCI_MANIFEST, DOCKER_MANIFEST]
INDEX_MEDIA_TYPES = [OCI_INDEX, DOCKER_MANIFEST_LIST]

DIGEST_HEADER = "Docker-Content-Digest"


class RegistryClient(ABC):
    """Blocking access to the blobs and manifests of one repository."""

    @abstractmethod
    def head_manifest(self, ref: Reference) -> str:
        """Return the content digest the reference currently points at."""

    @abstractmethod
    def get_manifest(self, ref: Reference) -> tuple[str, bytes]:
        """Return the media type and raw body of the manifest."""

    @abstractmethod
    def get_blob(self, ref: Reference, digest: str) -> bytes:
        """Return the content of a blob in the reference's repository."""


def _check_response(ref: Reference, response: requests.Response) -> None:
    """Translate registry responses into resolution errors."""
    status = response.status_code
    if status in (200, 201, 202):
        return
    method = response.request.method if response.request else "GET"
    detail = f"{method} {response.url} returned {status}"
    if status == 404:
        raise NotFound(str(ref), detail)
    if status in (401, 403):
        raise AuthFailed(str(ref), detail)
    if status == 429 or status >= 500:
        raise RegistryUnavailable(str(ref), detail)
    raise ResolutionError(str(ref), detail)


class OrasRegistryClient(RegistryClient):
    """RegistryClient backed by `oras`."""

    def __init__(
        self, registry: str, auth: Auth | None = None, insecure: bool = False
    ) -> None:
        self._client = OrasClient(hostname=registry, insecure=insecure)
        if auth:
            _LOGGER.info("Using authentication for OCI registry %s", registry)
            self._client.login(
                hostname=registry, username=auth.username, password=auth.password
            )

    def _request(
        self, ref: Reference, url: str, method: str, accept: list[str] | None = None
    ) -> requests.Response:
        headers = {"Accept": ", ".join(accept)} if accept else {}
        try:
            response = self._client.remote.do_request(
                url, method, headers=headers, stream=False
            )
        except (requests.ConnectionError, requests.Timeout) as err:
            raise RegistryUnavailable(str(ref), str(err)) from err
        _check_response(ref, response)
        return response

    def _manifest_url(self, ref: Reference) -> str:
        container = self._client.remote.get_container(ref.target)
        return f"{self._client.remote.prefix}://{container.manifest_url()}"

    def head_manifest(self, ref: Reference) -> str:
        response = self._request(
            ref,
            self._manifest_url(ref),
            "HEAD",
            accept=MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES,
        )
        if digest := response.headers.get(DIGEST_HEADER):
            return digest
        # Some registries only send the digest header on GET
        _, body = self.get_manifest(ref)
        return "sha256:" + hashlib.sha256(body).hexdigest()

    def get_manifest(self, ref: Reference) -> tuple[str, bytes]:
        response = self._request(
            ref,
            self._manifest_url(ref),
            "GET",
            accept=MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES,
        )
        media_type = response.headers.get("Content-Type", "").split(";")[0]
        return media_type, response.content

    def get_blob(self, ref: Reference, digest: str) -> bytes:
        container = self._client.remote.get_container(ref.target)
        url = f"{self._client.remote.prefix}://{container.get_blob_url(digest)}"
        return self._request(ref, url, "GET").content
