"""Tests for mirroring AppInstance resources into the store."""

import base64
from collections.abc import Callable
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from kubernetes_asyncio.client import ApiException
import pytest

from kubit.exceptions import InputException
from kubit.kubernetes import InstallationSync, KubernetesCredentials
from kubit.manifest import (
    UNINSTALL_FINALIZER,
    Installation,
    InstallationStatus,
    NamedResource,
)
from kubit.store import InMemoryStore
from kubit.task import TaskService

RESOURCE_ID = NamedResource("AppInstance", "default", "demo")


@pytest.fixture(name="api")
def api_fixture(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """A mocked custom objects API."""
    api = MagicMock()
    api.list_cluster_custom_object = AsyncMock()
    api.list_namespaced_custom_object = AsyncMock()
    api.patch_namespaced_custom_object = AsyncMock()
    api.patch_namespaced_custom_object_status = AsyncMock()
    monkeypatch.setattr("kubit.kubernetes.sync.client.CustomObjectsApi", lambda _: api)
    return api


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """An empty store."""
    return InMemoryStore()


async def test_list_installations(
    api: MagicMock, store: InMemoryStore, app_instance: Callable[..., dict[str, Any]]
) -> None:
    """Test invalid resources are skipped when loading the store."""
    invalid = app_instance(name="invalid")
    del invalid["spec"]
    api.list_cluster_custom_object.return_value = {
        "items": [app_instance(generation=3), invalid],
        "metadata": {"resourceVersion": "42"},
    }
    sync = InstallationSync(MagicMock(), store)
    assert await sync.list_installations() == "42"
    assert [obj.resource_id for obj in store.list_objects()] == [RESOURCE_ID]
    obj = store.get_object(RESOURCE_ID)
    assert obj is not None
    assert obj.generation == 3
    sync.close()


async def test_namespaced(api: MagicMock, store: InMemoryStore) -> None:
    """Test a namespace scoped sync only lists its namespace."""
    api.list_namespaced_custom_object.return_value = {
        "items": [],
        "metadata": {"resourceVersion": "1"},
    }
    sync = InstallationSync(MagicMock(), store, namespace="apps")
    await sync.list_installations()
    api.list_namespaced_custom_object.assert_awaited_once_with(
        "kubecfg.dev", "v1alpha1", "apps", "appinstances"
    )
    api.list_cluster_custom_object.assert_not_awaited()
    sync.close()


async def test_check(api: MagicMock, store: InMemoryStore) -> None:
    """Test a missing CRD is reported before watching."""
    api.list_cluster_custom_object.side_effect = ApiException(
        status=404, reason="Not Found"
    )
    sync = InstallationSync(MagicMock(), store)
    with pytest.raises(InputException, match="CRD"):
        await sync.check()
    sync.close()


async def test_write_back(
    api: MagicMock,
    store: InMemoryStore,
    task_service: TaskService,
    app_instance: Callable[..., dict[str, Any]],
) -> None:
    """Test status and finalizer changes are patched onto the resource."""
    sync = InstallationSync(MagicMock(), store)
    store.add_object(Installation.parse_doc(app_instance()))

    status = InstallationStatus(observed_generation=1, last_logs={"render": "ok"})
    store.update_status(RESOURCE_ID, status)
    store.set_finalizers(RESOURCE_ID, [UNINSTALL_FINALIZER])
    await task_service.block_till_done()

    args = api.patch_namespaced_custom_object_status.await_args.args
    assert args[:5] == ("kubecfg.dev", "v1alpha1", "default", "appinstances", "demo")
    assert args[5] == [
        {
            "op": "add",
            "path": "/status",
            "value": {
                "lastLogs": {"render": "ok"},
                "observedGeneration": 1,
                "conditions": [],
            },
        }
    ]
    args = api.patch_namespaced_custom_object.await_args.args
    assert args[5] == [
        {"op": "add", "path": "/metadata/finalizers", "value": [UNINSTALL_FINALIZER]}
    ]

    # A resource deleted in the meantime is not an error
    api.patch_namespaced_custom_object_status.side_effect = ApiException(status=404)
    store.update_status(RESOURCE_ID, InstallationStatus(observed_generation=2))
    await task_service.block_till_done()
    sync.close()


async def test_pull_secrets(
    monkeypatch: pytest.MonkeyPatch, app_instance: Callable[..., dict[str, Any]]
) -> None:
    """Test pull secrets are read in order and missing ones skipped."""
    config = {"auths": {"ghcr.io": {"username": "bot", "password": "token"}}}
    secret = {
        "metadata": {"name": "regcred", "namespace": "default"},
        "type": "kubernetes.io/dockerconfigjson",
        "data": {
            ".dockerconfigjson": base64.b64encode(
                json.dumps(config).encode("utf-8")
            ).decode("utf-8")
        },
    }

    async def read_secret(name: str, namespace: str) -> dict[str, Any]:
        if name == "missing":
            raise ApiException(status=404, reason="Not Found")
        return secret

    core_api = MagicMock()
    core_api.read_namespaced_secret = read_secret
    monkeypatch.setattr(
        "kubit.kubernetes.credentials.client.CoreV1Api", lambda _: core_api
    )
    api_client = MagicMock()
    api_client.sanitize_for_serialization = lambda obj: obj

    installation = Installation.parse_doc(
        app_instance(pull_secrets=["missing", "regcred"])
    )
    credentials = await KubernetesCredentials(api_client).credentials(installation)
    assert len(credentials) == 1
    auth = credentials[0].get_auth("ghcr.io")
    assert auth is not None
    assert auth.username == "bot"
