"""Providers of registry credentials for package resolution.

The controller asks a provider for the docker configs to try for an
installation. In the cluster they come from the installation's
`imagePullSecrets` (see `kubit.kubernetes.KubernetesCredentials`); locally
they come from the docker config of the current user.
"""

from abc import ABC, abstractmethod
import logging
import os
from pathlib import Path

import aiofiles

from .docker_config import DockerConfig
from .manifest import Installation

__all__ = [
    "CredentialProvider",
    "NoCredentials",
    "LocalCredentials",
]

_LOGGER = logging.getLogger(__name__)

DOCKER_CONFIG_ENV = "DOCKER_CONFIG"
DOCKER_CONFIG_FILE = "config.json"


class CredentialProvider(ABC):
    """Returns the registry credentials to try for an installation, in order."""

    @abstractmethod
    async def credentials(self, installation: Installation) -> list[DockerConfig]:
        """Return the docker configs to try, empty for anonymous access."""


class NoCredentials(CredentialProvider):
    """Always pulls anonymously."""

    async def credentials(self, installation: Installation) -> list[DockerConfig]:
        return []


def docker_config_path() -> Path:
    """Location of the docker config of the current user."""
    if config_dir := os.environ.get(DOCKER_CONFIG_ENV):
        return Path(config_dir) / DOCKER_CONFIG_FILE
    return Path.home() / ".docker" / DOCKER_CONFIG_FILE


class LocalCredentials(CredentialProvider):
    """Reads the docker config of the current user, like `docker pull` does."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path

    async def credentials(self, installation: Installation) -> list[DockerConfig]:
        path = self._path or docker_config_path()
        try:
            async with aiofiles.open(path) as config_file:
                content = await config_file.read()
        except FileNotFoundError:
            _LOGGER.debug("No docker config at %s, pulling anonymously", path)
            return []
        return [DockerConfig.from_str(content, source=str(path))]
