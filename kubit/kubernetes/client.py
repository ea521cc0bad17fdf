"""Kubernetes API client setup."""

import logging

from kubernetes_asyncio import config
from kubernetes_asyncio.client.api_client import ApiClient

from kubit.exceptions import InputException

_LOGGER = logging.getLogger(__name__)


async def load_api_client() -> ApiClient:
    """Return an API client, preferring in-cluster configuration.

    Falls back to the local kubeconfig when not running in a pod.
    """
    try:
        config.load_incluster_config()
        _LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        _LOGGER.info("In-cluster config not found, trying local kubeconfig")
        try:
            await config.load_kube_config()
        except config.ConfigException as err:
            raise InputException(
                f"Failed to load Kubernetes configuration: {err}"
            ) from err
        _LOGGER.info("Loaded local Kubernetes configuration")
    return ApiClient()
