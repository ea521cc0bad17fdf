"""Module for in memory installation store."""

import asyncio
import dataclasses
from collections import defaultdict
from collections.abc import Callable, AsyncGenerator
from typing import Any, TypeVar, DefaultDict

import logging

from kubit.manifest import Installation, InstallationStatus, NamedResource
from kubit.exceptions import ObjectNotFoundError

from .artifact import Artifact
from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)

S = TypeVar("S", bound=Artifact)


def _observed(status: InstallationStatus | None) -> int:
    if status is None or status.observed_generation is None:
        return 0
    return status.observed_generation


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores installations, status, and artifacts keyed by NamedResource.
    Supports event listeners for object, status, finalizer and artifact changes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, Installation] = {}
        self._status: dict[NamedResource, InstallationStatus] = {}
        self._artifacts: dict[NamedResource, Artifact] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_object(self, obj: Installation) -> Installation:
        """Add or update an installation in the store."""
        resource_id = obj.resource_id
        if obj.status is not None and resource_id not in self._status:
            self._status[resource_id] = obj.status
        if (existing := self._objects.get(resource_id)) is None:
            _LOGGER.debug("Adding object %s to store", resource_id)
            obj = dataclasses.replace(
                obj,
                generation=obj.generation or 1,
                status=None,
            )
        else:
            generation = max(obj.generation, existing.generation)
            if (
                obj.spec_doc() != existing.spec_doc()
                and obj.generation <= existing.generation
            ):
                generation = existing.generation + 1
            obj = dataclasses.replace(
                obj,
                generation=generation,
                finalizers=obj.finalizers or existing.finalizers,
                deleting=obj.deleting or existing.deleting,
                status=None,
            )
            if obj == dataclasses.replace(existing, contents=obj.contents):
                _LOGGER.debug(
                    "Object %s already exists in store, skipping", resource_id
                )
                self._objects[resource_id] = obj
                return obj
            _LOGGER.debug(
                "Updating existing object %s in store (generation %d)",
                resource_id,
                generation,
            )
        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, obj)
        return obj

    def get_object(self, resource_id: NamedResource) -> Installation | None:
        """Retrieve an installation by resource identity."""
        return self._objects.get(resource_id)

    def list_objects(self) -> list[Installation]:
        """List all installations in the store."""
        return list(self._objects.values())

    def delete_object(self, resource_id: NamedResource) -> None:
        """Request deletion of an installation."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found in store")
        if existing.finalizers:
            if existing.deleting:
                return
            _LOGGER.debug(
                "Marking %s as deleting, waiting on finalizers %s",
                resource_id,
                existing.finalizers,
            )
            obj = dataclasses.replace(existing, deleting=True)
            self._objects[resource_id] = obj
            self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, obj)
            return
        self._remove(resource_id)

    def _remove(self, resource_id: NamedResource) -> None:
        _LOGGER.debug("Removing object %s from store", resource_id)
        obj = self._objects.pop(resource_id)
        self._status.pop(resource_id, None)
        self._artifacts.pop(resource_id, None)
        self._fire_event(StoreEvent.OBJECT_REMOVED, resource_id, obj)

    def set_finalizers(self, resource_id: NamedResource, finalizers: list[str]) -> None:
        """Replace the finalizers of an installation."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found in store")
        if existing.finalizers == finalizers:
            return
        obj = dataclasses.replace(existing, finalizers=list(finalizers))
        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.FINALIZERS_UPDATED, resource_id, obj)
        if obj.deleting and not obj.finalizers:
            self._remove(resource_id)

    def update_status(
        self, resource_id: NamedResource, status: InstallationStatus
    ) -> bool:
        """Write the status of an installation."""
        if resource_id not in self._objects:
            raise ObjectNotFoundError(f"Object {resource_id} not found in store")
        current = self._status.get(resource_id)
        if _observed(status) < _observed(current):
            _LOGGER.info(
                "Ignoring status for %s with observed generation %s older than %s",
                resource_id.namespaced_name,
                status.observed_generation,
                _observed(current),
            )
            return False
        _LOGGER.debug(
            "Updating status for %s (observed generation %s)",
            resource_id.namespaced_name,
            status.observed_generation,
        )
        self._status[resource_id] = status
        self._fire_event(StoreEvent.STATUS_UPDATED, resource_id, status)
        return True

    def get_status(self, resource_id: NamedResource) -> InstallationStatus | None:
        """Retrieve the last written status for an installation."""
        return self._status.get(resource_id)

    def set_artifact(self, resource_id: NamedResource, artifact: S) -> None:
        """Store the artifact produced by reconciling an installation."""
        if not isinstance(artifact, Artifact):
            raise ValueError(
                f"Artifact/set {resource_id.namespaced_name} is not of type {Artifact.__name__} (was {artifact.__class__.__name__})"
            )
        self._artifacts[resource_id] = artifact
        self._fire_event(StoreEvent.ARTIFACT_UPDATED, resource_id, artifact)

    def get_artifact(self, resource_id: NamedResource, cls: type[S]) -> S | None:
        """Retrieve artifact information for an installation."""
        artifact = self._artifacts.get(resource_id)
        if artifact is not None:
            if not isinstance(artifact, cls):
                raise ValueError(
                    f"Artifact/get {resource_id.namespaced_name} is not of type {cls.__name__} (was {artifact.__class__.__name__})"
                )
            return artifact
        return None

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for rid, obj in list(self._objects.items()):
                if event in (StoreEvent.OBJECT_ADDED, StoreEvent.FINALIZERS_UPDATED):
                    callback(rid, obj)
                elif event == StoreEvent.STATUS_UPDATED:
                    if status := self._status.get(rid):
                        callback(rid, status)
                elif event == StoreEvent.ARTIFACT_UPDATED:
                    if artifact := self._artifacts.get(rid):
                        callback(rid, artifact)

        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_added(self) -> AsyncGenerator[tuple[NamedResource, Installation]]:
        """Watch for installations being added or updated."""
        queue: asyncio.Queue[tuple[NamedResource, Installation]] = asyncio.Queue()

        def callback(resource_id: NamedResource, obj: Installation) -> None:
            queue.put_nowait((resource_id, obj))

        remove_listener = self.add_listener(
            StoreEvent.OBJECT_ADDED, callback, flush=True
        )
        try:
            while True:
                yield await queue.get()
        except asyncio.CancelledError:
            _LOGGER.debug("watch_added cancelled")
            raise
        finally:
            remove_listener()

    async def watch_status(
        self, resource_id: NamedResource, generation: int
    ) -> InstallationStatus:
        """Wait until the installation status has observed `generation`."""
        if (status := self._status.get(resource_id)) is not None and _observed(
            status
        ) >= generation:
            return status

        future: asyncio.Future[InstallationStatus] = (
            asyncio.get_running_loop().create_future()
        )

        def on_status(rid: NamedResource, status: InstallationStatus) -> None:
            if rid == resource_id and _observed(status) >= generation:
                if not future.done():
                    future.set_result(status)

        def on_removed(rid: NamedResource, obj: Installation) -> None:
            if rid == resource_id and not future.done():
                future.set_exception(
                    ObjectNotFoundError(f"Object {resource_id} was removed")
                )

        remove_status = self.add_listener(StoreEvent.STATUS_UPDATED, on_status)
        remove_removed = self.add_listener(StoreEvent.OBJECT_REMOVED, on_removed)
        try:
            return await future
        finally:
            remove_status()
            remove_removed()

    async def watch_removed(self, resource_id: NamedResource) -> None:
        """Wait until the installation is no longer in the store."""
        if resource_id not in self._objects:
            return
        removed = asyncio.Event()

        def on_removed(rid: NamedResource, obj: Installation) -> None:
            if rid == resource_id:
                removed.set()

        remove_listener = self.add_listener(StoreEvent.OBJECT_REMOVED, on_removed)
        try:
            await removed.wait()
        finally:
            remove_listener()
