"""
Artifact containers: manifest schema, deterministic ZIP packaging, the
loader that validates a container into a ModuleDescriptor, and the builder
that writes one.
"""

from .builder import ArtifactBuilder
from .container import ArtifactContainer
from .loader import ArtifactLoader, load
from .manifest import ArtifactManifest

__all__ = [
    "ArtifactBuilder",
    "ArtifactContainer",
    "ArtifactLoader",
    "ArtifactManifest",
    "load",
]
