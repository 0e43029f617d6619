"""
Explicit, seedable CSPRNG resources.

Key generation and ciphertext randomisation draw from two separate
generators that are passed explicitly into every operation consuming
randomness; nothing in hedeploy reads ambient/global random state.

Each generator is a ChaCha20 keystream keyed through HKDF-SHA256 from a seed.
Seeding with a fixed value gives a reproducible stream (tests); seeding from
OS entropy is the production path. The secret and encryption generators use
different HKDF labels, so the same seed never yields the same stream in both.

A generator is an exclusive, sequential resource: a draw that races another
draw on the same instance raises ConcurrentAccessError rather than
interleaving the stream.
"""

import hashlib
import logging
import secrets
import threading
from typing import Union

import numpy as np
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import ConcurrentAccessError, ConfigValidationError
from ..utils.config import get_settings

logger = logging.getLogger(__name__)

SEED_SIZE = 32
_TWO_POW_64 = float(2**64)
_TWO_POW_MINUS_53 = 2.0**-53


class CSPRNG:
    """
    ChaCha20-based deterministic random bit generator.

    Use the subclasses SecretCSPRNG / EncryptionCSPRNG; the label is what
    separates their streams.
    """

    LABEL = b"hedeploy/csprng/v1"

    def __init__(self, seed: bytes, deterministic: bool = False):
        if len(seed) < 16:
            raise ValueError("CSPRNG seed must be at least 16 bytes")
        okm = HKDF(algorithm=hashes.SHA256(), length=48, salt=None, info=self.LABEL).derive(seed)
        self._encryptor = Cipher(algorithms.ChaCha20(okm[:32], okm[32:]), mode=None).encryptor()
        self._lock = threading.Lock()
        self._stream_id = hashlib.sha256(b"stream-id:" + okm).hexdigest()[:16]
        self._bytes_drawn = 0
        self.deterministic = deterministic

    @classmethod
    def from_seed(cls, seed: Union[int, bytes]) -> "CSPRNG":
        """Create a reproducible generator. For tests only."""
        if isinstance(seed, int):
            if seed < 0 or seed >= 2 ** (8 * SEED_SIZE):
                raise ValueError("Integer seed must fit in 256 unsigned bits")
            seed = seed.to_bytes(SEED_SIZE, "big")
        return cls(bytes(seed), deterministic=True)

    @classmethod
    def from_entropy(cls) -> "CSPRNG":
        """Create a generator seeded from the OS CSPRNG."""
        return cls(secrets.token_bytes(SEED_SIZE), deterministic=False)

    @classmethod
    def from_settings(cls) -> "CSPRNG":
        """Seeded from HEDEPLOY_SEED when HEDEPLOY_DETERMINISTIC is set, else from entropy."""
        settings = get_settings()
        if settings.DETERMINISTIC:
            if settings.is_production():
                raise ConfigValidationError("DETERMINISTIC", "seeded CSPRNGs are not allowed in production")
            if settings.SEED is None:
                raise ConfigValidationError("SEED", "HEDEPLOY_DETERMINISTIC requires HEDEPLOY_SEED")
            logger.warning("%s seeded from configuration; output is reproducible", cls.__name__)
            return cls.from_seed(settings.SEED)
        return cls.from_entropy()

    @property
    def stream_id(self) -> str:
        """Non-secret identifier of the keystream, used to detect shared state."""
        return self._stream_id

    @property
    def bytes_drawn(self) -> int:
        return self._bytes_drawn

    def next(self, n_bytes: int) -> bytes:
        """Draw the next n_bytes from the stream."""
        if n_bytes < 0:
            raise ValueError("n_bytes must be non-negative")
        if not self._lock.acquire(blocking=False):
            raise ConcurrentAccessError(type(self).__name__)
        try:
            out = self._encryptor.update(b"\x00" * n_bytes)
            self._bytes_drawn += n_bytes
            return out
        finally:
            self._lock.release()

    def uniform_u64(self, count: int) -> np.ndarray:
        """Uniform vector over Z_{2^64}."""
        return np.frombuffer(self.next(8 * count), dtype="<u8").astype(np.uint64)

    def binary(self, count: int) -> np.ndarray:
        """Uniform 0/1 vector (binary secret keys)."""
        raw = np.frombuffer(self.next(count), dtype=np.uint8)
        return (raw & 1).astype(np.uint64)

    def torus_gaussian(self, count: int, std: float) -> np.ndarray:
        """
        Rounded Gaussian noise on the 2^64 torus.

        std is a fraction of the modulus; samples are returned as uint64
        two's-complement values. Box-Muller over the keystream keeps the
        draw reproducible for seeded generators.
        """
        pairs = (count + 1) // 2
        raw = self.uniform_u64(2 * pairs)
        u = ((raw >> np.uint64(11)).astype(np.float64) + 0.5) * _TWO_POW_MINUS_53
        u1, u2 = u[0::2], u[1::2]
        radius = np.sqrt(-2.0 * np.log(u1))
        normal = np.concatenate([radius * np.cos(2 * np.pi * u2), radius * np.sin(2 * np.pi * u2)])
        scaled = np.rint(normal[:count] * std * _TWO_POW_64)
        return scaled.astype(np.int64).view(np.uint64)

    def __repr__(self) -> str:
        mode = "seeded" if self.deterministic else "entropy"
        return f"{type(self).__name__}(stream={self._stream_id}, mode={mode})"


class SecretCSPRNG(CSPRNG):
    """Generator for secret key material."""

    LABEL = b"hedeploy/csprng/secret/v1"


class EncryptionCSPRNG(CSPRNG):
    """Generator for encryption masks and noise."""

    LABEL = b"hedeploy/csprng/encryption/v1"
