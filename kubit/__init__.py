"""
kubit installs packaged Kubernetes applications described by `AppInstance`
resources.

A package is an OCI artifact holding a template for an external renderer. An
`AppInstance` points at a package and carries the configuration overlay for
it. kubit resolves the package, renders it, applies the result with
`kubectl apply --applyset --prune` and writes logs and conditions back onto
the resource.
"""

__all__ = [
    "manifest",
    "objectset",
    "plan",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
