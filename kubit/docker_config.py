"""Module for handling docker registry credentials.

The `~/.docker/config.json` file and `kubernetes.io/dockerconfigjson` secrets
share the same format: an `auths` map from registry host to credentials,
given either as `username` and `password` or as a base64 `auth` string.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any

from .exceptions import InputException

__all__ = [
    "Auth",
    "DockerConfig",
]

_LOGGER = logging.getLogger(__name__)

DOCKER_CONFIG_SECRET_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_KEY = ".dockerconfigjson"

# Key the docker client stores Docker Hub credentials under
DOCKER_HUB_INDEX = "https://index.docker.io/v1/"


@dataclass
class Auth:
    """Authentication credentials."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Auth(username={self.username!r}, password=<redacted>)"


class DockerConfig:
    """Parsed docker config holding credentials per registry."""

    def __init__(self, auths: dict[str, dict[str, Any]], source: str = "") -> None:
        self._auths = auths
        self._source = source

    @classmethod
    def from_str(cls, content: str | bytes, source: str = "") -> "DockerConfig":
        """Parse a docker config JSON document."""
        try:
            doc = json.loads(content)
        except json.JSONDecodeError as err:
            raise InputException(f"Invalid docker config {source}: {err}") from err
        if not isinstance(doc, dict):
            raise InputException(f"Invalid docker config {source}: not an object")
        auths = doc.get("auths") or {}
        if not isinstance(auths, dict):
            raise InputException(f"Invalid docker config {source}: bad auths")
        return cls(auths, source)

    @classmethod
    def from_secret(cls, secret: dict[str, Any]) -> "DockerConfig":
        """Parse the docker config held by a kubernetes pull secret."""
        metadata = secret.get("metadata") or {}
        name = f"{metadata.get('namespace')}/{metadata.get('name')}"
        if (secret_type := secret.get("type")) != DOCKER_CONFIG_SECRET_TYPE:
            raise InputException(
                f"Secret {name} has type {secret_type}, expected {DOCKER_CONFIG_SECRET_TYPE}"
            )
        if string_data := (secret.get("stringData") or {}).get(DOCKER_CONFIG_KEY):
            return cls.from_str(string_data, source=name)
        if not (data := (secret.get("data") or {}).get(DOCKER_CONFIG_KEY)):
            raise InputException(f"Secret {name} does not contain {DOCKER_CONFIG_KEY}")
        try:
            decoded = base64.b64decode(data)
        except binascii.Error as err:
            raise InputException(f"Secret {name} has invalid base64 data") from err
        return cls.from_str(decoded, source=name)

    @classmethod
    def for_auth(cls, registry: str, auth: Auth) -> "DockerConfig":
        """Create a docker config holding a single credential."""
        token = f"{auth.username}:{auth.password}".encode("utf-8")
        entry = {"auth": base64.b64encode(token).decode("ascii")}
        auths = {registry: entry}
        if registry == "docker.io":
            auths[DOCKER_HUB_INDEX] = entry
        return cls(auths, source=registry)

    def to_json(self) -> str:
        """Serialize in the `config.json` format."""
        return json.dumps({"auths": self._auths}, sort_keys=True)

    def get_auth(self, registry: str) -> Auth | None:
        """Return the credentials for a registry.

        A registry that is not listed pulls anonymously and returns None,
        the same as the docker client.
        """
        if (credentials := self._auths.get(registry)) is None:
            _LOGGER.debug("No auth found for registry %s in %s", registry, self)
            return None
        if "username" in credentials and "password" in credentials:
            return Auth(
                username=credentials["username"], password=credentials["password"]
            )
        if not (auth_str := credentials.get("auth")):
            raise InputException(
                f"Docker config {self._source} has no credentials for {registry}"
            )
        try:
            decoded = base64.b64decode(auth_str).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as err:
            raise InputException(
                f"Docker config {self._source} has an invalid auth for {registry}"
            ) from err
        if ":" not in decoded:
            raise InputException(
                f"Docker config {self._source} auth for {registry} is missing a colon"
            )
        username, password = decoded.split(":", 1)
        return Auth(username=username, password=password)

    @property
    def registries(self) -> list[str]:
        return list(self._auths)

    def __repr__(self) -> str:
        return f"DockerConfig(source={self._source!r}, auths=<redacted>)"
