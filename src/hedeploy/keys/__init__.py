"""
Key management for hedeploy.

Client/server keysets, bring-your-own-key bindings, the keyset manager and
the ciphertext bridge.
"""

from .bridge import CiphertextBridge, convert
from .keysets import (
    ClientKeyset,
    EvaluationKeys,
    ExternalSecretKey,
    KeyBinding,
    SecretKeyMaterial,
    ServerKeyset,
)
from .manager import KeysetManager

__all__ = [
    "ClientKeyset",
    "ServerKeyset",
    "EvaluationKeys",
    "SecretKeyMaterial",
    "ExternalSecretKey",
    "KeyBinding",
    "KeysetManager",
    "CiphertextBridge",
    "convert",
]
