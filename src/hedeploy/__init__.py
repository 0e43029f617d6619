"""
hedeploy: cross-environment deployment of homomorphic-encryption modules.

A circuit compiled in a prototyping environment is shipped as an artifact
container, loaded here into a module descriptor, and served through typed
client/server stubs:
- Artifact loading with versioned manifests
- Keyset construction with bring-your-own-key bindings
- Key-switching bridge between external and internal parameter sets
- Explicit, seedable CSPRNG resources
"""

__version__ = "0.1.0"

from .artifact import ArtifactBuilder, ArtifactLoader, load
from .errors import HEDeployError
from .keys import (
    CiphertextBridge,
    ClientKeyset,
    ExternalSecretKey,
    KeyBinding,
    KeysetManager,
    ServerKeyset,
)
from .logging import configure_logging, get_logger
from .lwe import Ciphertext, CryptoParams, EncryptionCSPRNG, SecretCSPRNG
from .module import (
    ArgRole,
    ArgSpec,
    CallFrame,
    ClientModule,
    EvaluationEngine,
    LinearCircuitEngine,
    ModuleDescriptor,
    ServerModule,
    compile_linear_circuit,
)

__all__ = [
    "__version__",
    "HEDeployError",
    "configure_logging",
    "get_logger",
    "ArtifactBuilder",
    "ArtifactLoader",
    "load",
    "CryptoParams",
    "Ciphertext",
    "SecretCSPRNG",
    "EncryptionCSPRNG",
    "ClientKeyset",
    "ServerKeyset",
    "ExternalSecretKey",
    "KeyBinding",
    "KeysetManager",
    "CiphertextBridge",
    "ArgRole",
    "ArgSpec",
    "CallFrame",
    "ModuleDescriptor",
    "EvaluationEngine",
    "LinearCircuitEngine",
    "compile_linear_circuit",
    "ClientModule",
    "ServerModule",
]
