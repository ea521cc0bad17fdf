"""Registry credentials from the pull secrets of an installation."""

import logging

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.client.api_client import ApiClient

from kubit.credentials import CredentialProvider
from kubit.docker_config import DockerConfig
from kubit.manifest import Installation

_LOGGER = logging.getLogger(__name__)


class KubernetesCredentials(CredentialProvider):
    """Reads `imagePullSecrets` from the installation's namespace, in order.

    A secret that does not exist is skipped with a warning so the remaining
    credentials, or anonymous access, can still be tried.
    """

    def __init__(self, api_client: ApiClient) -> None:
        self._api_client = api_client
        self._core_api = client.CoreV1Api(api_client)

    async def credentials(self, installation: Installation) -> list[DockerConfig]:
        result = []
        for name in installation.image_pull_secrets:
            try:
                secret = await self._core_api.read_namespaced_secret(
                    name=name, namespace=installation.namespace
                )
            except ApiException as ex:
                if ex.status == 404:
                    _LOGGER.warning(
                        "Pull secret %s/%s of %s not found",
                        installation.namespace,
                        name,
                        installation.name,
                    )
                    continue
                raise
            doc = self._api_client.sanitize_for_serialization(secret)
            result.append(DockerConfig.from_secret(doc))
        return result
