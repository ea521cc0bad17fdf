"""Binding of kubit to a Kubernetes cluster.

`InstallationSync` mirrors AppInstance resources into a store and writes
status and finalizers back. `KubernetesCredentials` looks up the pull
secrets of an installation.
"""

from .client import load_api_client
from .credentials import KubernetesCredentials
from .sync import InstallationSync

__all__ = [
    "load_api_client",
    "KubernetesCredentials",
    "InstallationSync",
]
