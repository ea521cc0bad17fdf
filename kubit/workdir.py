"""Working directories for reconciliation attempts.

Every attempt gets a fresh directory so nothing leaks between attempts or
installations. Directories are named after the installation to make them
easy to find while debugging:

    <base>/kubit-<slug>/<hash>-<random>/
"""

import hashlib
import logging
import tempfile
from pathlib import Path
from shutil import rmtree

from slugify import slugify

from .manifest import NamedResource

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Workdir",
    "attempt_workdir",
]


class Workdir:
    """A fresh directory owned by one attempt, removed on exit."""

    def __init__(self, path: Path, keep: bool = False) -> None:
        self.path = path
        self._keep = keep

    def subdir(self, name: str) -> Path:
        """Return a subdirectory of the work directory, created if missing."""
        path = self.path / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def cleanup(self) -> None:
        if self._keep or not self.path.exists():
            return
        _LOGGER.debug("Cleaning up work directory %s", self.path)
        rmtree(self.path, ignore_errors=True)

    def __enter__(self) -> "Workdir":
        return self

    def __exit__(self, *args: object) -> None:
        self.cleanup()


def attempt_workdir(
    resource_id: NamedResource,
    generation: int,
    base: Path | None = None,
    keep: bool = False,
) -> Workdir:
    """Create a fresh work directory for an attempt on an installation."""
    base = base or Path(tempfile.gettempdir())
    slug = slugify(
        f"{resource_id.namespace}-{resource_id.name}",
        max_length=50,
        lowercase=True,
        separator="-",
    )
    key = hashlib.sha256(
        f"{resource_id.namespaced_name}@{generation}".encode("utf-8")
    ).hexdigest()[:12]
    parent = base / f"kubit-{slug}"
    parent.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"{key}-", dir=parent))
    _LOGGER.debug("Created work directory %s for %s", path, resource_id)
    return Workdir(path, keep=keep)
