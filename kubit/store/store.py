"""Store module for holding installations while reconciling them."""

from abc import ABC, abstractmethod
from collections.abc import Callable, AsyncGenerator
from enum import Enum
from typing import Any, TypeVar, TYPE_CHECKING

from kubit.manifest import Installation, InstallationStatus, NamedResource

from .artifact import Artifact

S = TypeVar("S", bound=Artifact)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    """An installation was created or its spec or metadata changed."""

    OBJECT_REMOVED = "object_removed"
    """An installation was finalized and is gone."""

    STATUS_UPDATED = "status_updated"
    FINALIZERS_UPDATED = "finalizers_updated"
    ARTIFACT_UPDATED = "artifact_updated"


class Store(ABC):
    """Abstract base class for the installation store with listener support."""

    @abstractmethod
    def add_object(self, obj: Installation) -> Installation:
        """Add or update an installation in the store.

        When the incoming object changes the spec without supplying a newer
        generation the store assigns one, the same way the API server does.
        Returns the object as stored.
        """

    @abstractmethod
    def get_object(self, resource_id: NamedResource) -> Installation | None:
        """Retrieve an installation by resource identity."""

    @abstractmethod
    def list_objects(self) -> list[Installation]:
        """List all installations in the store."""

    @abstractmethod
    def delete_object(self, resource_id: NamedResource) -> None:
        """Request deletion of an installation.

        An installation holding finalizers is only marked as deleting; it is
        removed once its finalizers are cleared.
        """

    @abstractmethod
    def set_finalizers(self, resource_id: NamedResource, finalizers: list[str]) -> None:
        """Replace the finalizers of an installation."""

    @abstractmethod
    def update_status(
        self, resource_id: NamedResource, status: InstallationStatus
    ) -> bool:
        """Write the status of an installation.

        A status whose observed generation is older than the stored one is
        rejected and False is returned.
        """

    @abstractmethod
    def get_status(self, resource_id: NamedResource) -> InstallationStatus | None:
        """Retrieve the last written status for an installation."""

    @abstractmethod
    def set_artifact(self, resource_id: NamedResource, artifact: S) -> None:
        """Store the artifact produced by reconciling an installation."""

    @abstractmethod
    def get_artifact(self, resource_id: NamedResource, cls: type[S]) -> S | None:
        """Retrieve artifact information for an installation."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        With `flush` the callback is invoked right away for every object that
        already has data for the event. Returns a callable that removes the
        listener.
        """

    @abstractmethod
    async def watch_added(self) -> AsyncGenerator[tuple[NamedResource, Installation]]:
        """
        Watch for installations being added or updated.

        Existing installations are yielded first, then every subsequent add
        or update as it happens.
        """
        if TYPE_CHECKING:
            yield None, None  # type: ignore[misc]

    @abstractmethod
    async def watch_status(
        self, resource_id: NamedResource, generation: int
    ) -> InstallationStatus:
        """
        Wait until the installation status has observed `generation`.

        Returns immediately if the current status already has. The caller is
        expected to handle timeouts.

        Raises:
            ObjectNotFoundError: If the installation is removed while waiting.
        """

    @abstractmethod
    async def watch_removed(self, resource_id: NamedResource) -> None:
        """Wait until the installation is no longer in the store."""
