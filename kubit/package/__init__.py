"""Resolution of package artifacts.

A package is an OCI artifact whose config blob names an entry template and
carries metadata from the packaging tool, and whose layers hold the template
and its dependencies. `file://` references name a local entry template and
are used while iterating on a package.
"""

from .artifact import PackageConfig, ResolvedPackage
from .reference import Reference, parse_reference
from .registry import RegistryClient, OrasRegistryClient
from .resolver import PackageResolver, resolve

__all__ = [
    "PackageConfig",
    "ResolvedPackage",
    "Reference",
    "parse_reference",
    "RegistryClient",
    "OrasRegistryClient",
    "PackageResolver",
    "resolve",
]
