"""Mirror AppInstance resources between the cluster and the store.

Installations are listed, then watched, into the store. Status written by
the controller and finalizer changes are patched back onto the resources.
"""

import asyncio
import logging
from typing import Any

from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.client.api_client import ApiClient

from kubit.exceptions import InputException
from kubit.manifest import (
    APP_INSTANCE_GROUP,
    APP_INSTANCE_PLURAL,
    APP_INSTANCE_VERSION,
    Installation,
    InstallationStatus,
    NamedResource,
)
from kubit.store import Store, StoreEvent
from kubit.task import get_task_service

__all__ = [
    "InstallationSync",
]

_LOGGER = logging.getLogger(__name__)

WATCH_TIMEOUT = 300
RELIST_DELAY = 5.0

# The API server expired the resource version of the watch
GONE = 410


class InstallationSync:
    """Keeps the store in sync with AppInstance resources in the cluster."""

    def __init__(
        self, api_client: ApiClient, store: Store, namespace: str | None = None
    ) -> None:
        self._api = client.CustomObjectsApi(api_client)
        self._store = store
        self._namespace = namespace
        self._task_service = get_task_service()
        self._listeners = [
            store.add_listener(StoreEvent.STATUS_UPDATED, self._on_status),
            store.add_listener(StoreEvent.FINALIZERS_UPDATED, self._on_finalizers),
        ]

    def close(self) -> None:
        for remove in self._listeners:
            remove()
        self._listeners.clear()

    def _list_args(self) -> tuple[list[Any], Any]:
        if self._namespace:
            return [
                APP_INSTANCE_GROUP,
                APP_INSTANCE_VERSION,
                self._namespace,
                APP_INSTANCE_PLURAL,
            ], self._api.list_namespaced_custom_object
        return [
            APP_INSTANCE_GROUP,
            APP_INSTANCE_VERSION,
            APP_INSTANCE_PLURAL,
        ], self._api.list_cluster_custom_object

    async def check(self) -> None:
        """Fail early when the AppInstance resource is not queryable."""
        args, func = self._list_args()
        try:
            await func(*args, limit=1)
        except ApiException as ex:
            raise InputException(
                f"AppInstance resources are not queryable ({ex.status} {ex.reason}); "
                "is the CRD installed?"
            ) from ex

    def _added(self, doc: dict[str, Any]) -> None:
        try:
            obj = Installation.parse_doc(doc)
        except InputException as err:
            _LOGGER.warning("Ignoring invalid AppInstance: %s", err)
            return
        self._store.add_object(obj)

    def _deleted(self, doc: dict[str, Any]) -> None:
        metadata = doc.get("metadata") or {}
        resource_id = NamedResource(
            Installation.kind, metadata.get("namespace"), metadata.get("name", "")
        )
        if (existing := self._store.get_object(resource_id)) is None:
            return
        _LOGGER.info("AppInstance %s was deleted", resource_id.namespaced_name)
        if existing.finalizers:
            self._store.set_finalizers(resource_id, [])
        if self._store.get_object(resource_id) is not None:
            self._store.delete_object(resource_id)

    async def list_installations(self) -> str:
        """Load every AppInstance into the store, returning the list version."""
        args, func = self._list_args()
        listing = await func(*args)
        for doc in listing.get("items") or []:
            self._added(doc)
        _LOGGER.info("Loaded %d AppInstances", len(listing.get("items") or []))
        return listing["metadata"]["resourceVersion"]

    async def _watch(self, resource_version: str) -> str | None:
        """Apply watch events to the store until the watch ends.

        Returns the last resource version seen, or None when a relist is
        needed.
        """
        args, func = self._list_args()
        w = watch.Watch()
        try:
            async for event in w.stream(
                func,
                *args,
                resource_version=resource_version,
                timeout_seconds=WATCH_TIMEOUT,
            ):
                doc = event["object"]
                if event["type"] == "ERROR":
                    if doc.get("code") == GONE:
                        return None
                    _LOGGER.warning("Watch error: %s", doc.get("message"))
                    return None
                resource_version = doc["metadata"]["resourceVersion"]
                if event["type"] == "DELETED":
                    self._deleted(doc)
                else:
                    self._added(doc)
        finally:
            w.stop()
        return resource_version

    async def run(self) -> None:
        """List and watch AppInstances until cancelled."""
        resource_version: str | None = None
        while True:
            try:
                if resource_version is None:
                    resource_version = await self.list_installations()
                resource_version = await self._watch(resource_version)
            except ApiException as ex:
                if ex.status != GONE:
                    _LOGGER.warning("Watching AppInstances failed: %s", ex.reason)
                    await asyncio.sleep(RELIST_DELAY)
                resource_version = None

    def _on_status(self, resource_id: NamedResource, status: InstallationStatus) -> None:
        self._task_service.create_task(self.patch_status(resource_id, status))

    def _on_finalizers(self, resource_id: NamedResource, obj: Installation) -> None:
        self._task_service.create_task(
            self.patch_finalizers(resource_id, list(obj.finalizers))
        )

    async def _patch(
        self, resource_id: NamedResource, body: list[dict[str, Any]], status: bool
    ) -> None:
        patch = (
            self._api.patch_namespaced_custom_object_status
            if status
            else self._api.patch_namespaced_custom_object
        )
        try:
            await patch(
                APP_INSTANCE_GROUP,
                APP_INSTANCE_VERSION,
                resource_id.namespace,
                APP_INSTANCE_PLURAL,
                resource_id.name,
                body,
            )
        except ApiException as ex:
            if ex.status == 404:
                _LOGGER.debug("AppInstance %s is gone, not patching", resource_id)
                return
            raise

    async def patch_status(
        self, resource_id: NamedResource, status: InstallationStatus
    ) -> None:
        """Replace the status subresource of the AppInstance."""
        _LOGGER.debug("Patching status of %s", resource_id.namespaced_name)
        await self._patch(
            resource_id,
            [{"op": "add", "path": "/status", "value": status.compact_dict()}],
            status=True,
        )

    async def patch_finalizers(
        self, resource_id: NamedResource, finalizers: list[str]
    ) -> None:
        """Replace the finalizers of the AppInstance."""
        _LOGGER.debug(
            "Patching finalizers of %s to %s", resource_id.namespaced_name, finalizers
        )
        await self._patch(
            resource_id,
            [{"op": "add", "path": "/metadata/finalizers", "value": finalizers}],
            status=False,
        )
