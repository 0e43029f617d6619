"""
LWE primitives for the hedeploy deployment layer.

Parameter sets, tagged ciphertexts, encodings, key-switching keys, explicit
CSPRNG resources and the ciphertext wire format.
"""

from .core import (
    MAX_BIT_WIDTH,
    TORUS_MODULUS,
    Ciphertext,
    CryptoParams,
    Encoding,
    KeyStorageChoice,
    KeySwitchKey,
    gadget_decompose,
    lwe_encrypt,
    lwe_phase,
)
from .csprng import CSPRNG, EncryptionCSPRNG, SecretCSPRNG
from .serialization import (
    CiphertextFormat,
    CiphertextSerializer,
    SerializedCiphertext,
    ciphertext_from_bytes,
    ciphertext_to_bytes,
    deserialize_ciphertext,
    serialize_ciphertext,
)

__all__ = [
    # Core
    "CryptoParams",
    "KeyStorageChoice",
    "Ciphertext",
    "Encoding",
    "KeySwitchKey",
    "lwe_encrypt",
    "lwe_phase",
    "gadget_decompose",
    "MAX_BIT_WIDTH",
    "TORUS_MODULUS",
    # Randomness
    "CSPRNG",
    "SecretCSPRNG",
    "EncryptionCSPRNG",
    # Serialization
    "CiphertextFormat",
    "CiphertextSerializer",
    "SerializedCiphertext",
    "serialize_ciphertext",
    "deserialize_ciphertext",
    "ciphertext_to_bytes",
    "ciphertext_from_bytes",
]
