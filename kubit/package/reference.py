"""Parsing of package artifact references."""

from dataclasses import dataclass, replace

from kubit.exceptions import InputException

__all__ = [
    "Reference",
    "parse_reference",
]

OCI_SCHEME = "oci://"
FILE_SCHEME = "file://"
DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class Reference:
    """A parsed `registry/repository[:tag][@digest]` reference."""

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def target(self) -> str:
        """The reference as passed to the registry client, digest preferred."""
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return f"{self.registry}/{self.repository}:{self.tag or DEFAULT_TAG}"

    def pinned(self, digest: str) -> "Reference":
        """Return the reference pinned to a content digest."""
        return replace(self, digest=digest)

    def __str__(self) -> str:
        result = f"{self.registry}/{self.repository}"
        if self.tag:
            result += f":{self.tag}"
        if self.digest:
            result += f"@{self.digest}"
        return result


def _is_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(value: str) -> Reference:
    """Parse an OCI reference, with or without the `oci://` prefix."""
    ref = value.removeprefix(OCI_SCHEME)
    if not ref or any(c.isspace() for c in ref):
        raise InputException(f"Invalid package reference '{value}'")
    digest: str | None = None
    if "@" in ref:
        ref, digest = ref.split("@", 1)
        algorithm, _, encoded = digest.partition(":")
        if not algorithm or not encoded:
            raise InputException(f"Invalid digest in package reference '{value}'")
    tag: str | None = None
    name = ref
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        name, tag = ref.rsplit(":", 1)
    first, _, rest = name.partition("/")
    if rest and _is_registry(first):
        registry, repository = first, rest
    else:
        registry, repository = DEFAULT_REGISTRY, name
    if not repository or (tag is not None and not tag):
        raise InputException(f"Invalid package reference '{value}'")
    return Reference(
        registry=registry,
        repository=repository,
        tag=tag if tag or digest else DEFAULT_TAG,
        digest=digest,
    )
