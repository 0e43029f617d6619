"""
LWE Core Module.

Foundational primitives for the deployment layer: crypto parameter sets,
tagged LWE ciphertexts, message encodings, and gadget-decomposed
key-switching keys.

All arithmetic is over the discretised torus Z_{2^64}: numpy uint64 arrays
wrap modulo 2^64, which is exactly the ciphertext modulus. An LWE ciphertext
under a binary secret s of dimension n is the vector

    (a_1, ..., a_n, b)   with   b = <a, s> + e + m

where m is the torus encoding of the message and e is rounded Gaussian
noise. A ciphertext is tagged with the fingerprint of the CryptoParams it
was produced under; only the ciphertext bridge may re-tag one.

The preset parameter sets are chosen so the reference key-switch stays
within the noise margin for messages up to MAX_BIT_WIDTH bits. Production
parameter sets come from the circuit compiler through the artifact manifest.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, Optional

import numpy as np

from .csprng import CSPRNG

logger = logging.getLogger(__name__)

TORUS_BITS = 64
TORUS_MODULUS = 2**TORUS_BITS
MAX_BIT_WIDTH = 16


class KeyStorageChoice(str, Enum):
    """Secret key fresh ciphertexts are encrypted under."""

    BIG = "big"  # flattened GLWE key, glwe_dimension * polynomial_size
    SMALL = "small"  # LWE key, lwe_dimension


@dataclass(frozen=True)
class CryptoParams:
    """
    One homomorphic encryption parameter configuration.

    Immutable and compared by value: two ciphertexts can be combined
    without bridging iff their CryptoParams are equal.

    Noise values are standard deviations as fractions of the modulus.
    """

    lwe_dimension: int
    glwe_dimension: int
    polynomial_size: int
    pbs_base_log: int
    pbs_level: int
    lwe_noise: float
    glwe_noise: float
    key_storage_choice: KeyStorageChoice = KeyStorageChoice.BIG
    ks_base_log: int = 4
    ks_level: int = 6

    def __post_init__(self):
        object.__setattr__(self, "key_storage_choice", KeyStorageChoice(self.key_storage_choice))
        for name in ("lwe_dimension", "glwe_dimension", "polynomial_size", "pbs_base_log", "pbs_level",
                     "ks_base_log", "ks_level"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if self.polynomial_size & (self.polynomial_size - 1):
            raise ValueError("polynomial_size must be a power of two")
        if self.pbs_base_log * self.pbs_level > TORUS_BITS:
            raise ValueError("pbs_base_log * pbs_level exceeds the torus precision")
        if self.ks_base_log * self.ks_level > TORUS_BITS:
            raise ValueError("ks_base_log * ks_level exceeds the torus precision")
        for name in ("lwe_noise", "glwe_noise"):
            value = getattr(self, name)
            if not 0.0 < float(value) < 0.25:
                raise ValueError(f"{name} must be in (0, 0.25), got {value!r}")

    @property
    def glwe_key_dimension(self) -> int:
        return self.glwe_dimension * self.polynomial_size

    @property
    def encryption_key_dimension(self) -> int:
        """Dimension of the key fresh ciphertexts live under."""
        if self.key_storage_choice is KeyStorageChoice.BIG:
            return self.glwe_key_dimension
        return self.lwe_dimension

    @property
    def encryption_noise(self) -> float:
        if self.key_storage_choice is KeyStorageChoice.BIG:
            return self.glwe_noise
        return self.lwe_noise

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary (manifest schema)."""
        return {
            "lwe_dimension": self.lwe_dimension,
            "glwe_dimension": self.glwe_dimension,
            "polynomial_size": self.polynomial_size,
            "pbs_base_log": self.pbs_base_log,
            "pbs_level": self.pbs_level,
            "lwe_noise": float(self.lwe_noise),
            "glwe_noise": float(self.glwe_noise),
            "key_storage_choice": self.key_storage_choice.value,
            "ks_base_log": self.ks_base_log,
            "ks_level": self.ks_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CryptoParams":
        """Deserialize from dictionary."""
        return cls(
            lwe_dimension=data["lwe_dimension"],
            glwe_dimension=data["glwe_dimension"],
            polynomial_size=data["polynomial_size"],
            pbs_base_log=data["pbs_base_log"],
            pbs_level=data["pbs_level"],
            lwe_noise=float(data["lwe_noise"]),
            glwe_noise=float(data["glwe_noise"]),
            key_storage_choice=KeyStorageChoice(data.get("key_storage_choice", "big")),
            ks_base_log=data.get("ks_base_log", 4),
            ks_level=data.get("ks_level", 6),
        )

    def get_hash(self) -> str:
        """Compute deterministic hash of parameters."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode()
        return f"sha256:{hashlib.sha256(canonical).hexdigest()}"

    @cached_property
    def params_id(self) -> str:
        """Stable identifier used to tag ciphertexts and index keys."""
        return self.get_hash()

    @classmethod
    def default_internal(cls) -> "CryptoParams":
        """Parameter set for circuits evaluated by the deployment engine."""
        return cls(
            lwe_dimension=742,
            glwe_dimension=1,
            polynomial_size=2048,
            pbs_base_log=23,
            pbs_level=1,
            lwe_noise=2.0**-30,
            glwe_noise=2.0**-50,
            key_storage_choice=KeyStorageChoice.BIG,
            ks_base_log=4,
            ks_level=6,
        )

    @classmethod
    def testing(cls, lwe_dimension: int = 64, polynomial_size: int = 256, **overrides: Any) -> "CryptoParams":
        """Small, fast parameter set for unit tests. Offers no security."""
        values = dict(
            lwe_dimension=lwe_dimension,
            glwe_dimension=1,
            polynomial_size=polynomial_size,
            pbs_base_log=8,
            pbs_level=3,
            lwe_noise=2.0**-40,
            glwe_noise=2.0**-40,
            key_storage_choice=KeyStorageChoice.BIG,
            ks_base_log=4,
            ks_level=6,
        )
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True, eq=False)
class Ciphertext:
    """
    LWE ciphertext tagged with the parameter set it was produced under.

    The body is a read-only uint64 vector (a_1..a_n, b); operations return
    new ciphertexts and never mutate an existing one.
    """

    params_id: str
    body: np.ndarray = field(repr=False)

    def __post_init__(self):
        body = np.array(self.body, dtype=np.uint64, copy=True).reshape(-1)
        if body.size < 2:
            raise ValueError("LWE body must hold at least one mask element and b")
        body.setflags(write=False)
        object.__setattr__(self, "body", body)

    @property
    def dimension(self) -> int:
        return int(self.body.size - 1)

    @property
    def mask(self) -> np.ndarray:
        return self.body[:-1]

    @property
    def b(self) -> int:
        return int(self.body[-1])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ciphertext):
            return NotImplemented
        return self.params_id == other.params_id and np.array_equal(self.body, other.body)

    __hash__ = None


@dataclass(frozen=True)
class Encoding:
    """Maps integers of a declared width/signedness onto the torus."""

    bit_width: int
    signed: bool = False

    def __post_init__(self):
        if not 1 <= self.bit_width <= MAX_BIT_WIDTH:
            raise ValueError(f"bit_width must be in [1, {MAX_BIT_WIDTH}], got {self.bit_width}")

    @property
    def delta(self) -> int:
        return 1 << (TORUS_BITS - self.bit_width)

    @property
    def min_value(self) -> int:
        return -(1 << (self.bit_width - 1)) if self.signed else 0

    @property
    def max_value(self) -> int:
        return (1 << (self.bit_width - 1)) - 1 if self.signed else (1 << self.bit_width) - 1

    def fits(self, value: int) -> bool:
        return self.min_value <= value <= self.max_value

    def encode(self, value: int) -> int:
        """Integer -> torus element (two's complement for signed values)."""
        if not self.fits(value):
            raise ValueError(f"{value} outside [{self.min_value}, {self.max_value}]")
        return ((value % (1 << self.bit_width)) * self.delta) % TORUS_MODULUS

    def decode(self, phase: int) -> int:
        """Torus phase -> integer, rounding away the noise."""
        message = ((phase + self.delta // 2) % TORUS_MODULUS) >> (TORUS_BITS - self.bit_width)
        if self.signed and message >= 1 << (self.bit_width - 1):
            message -= 1 << self.bit_width
        return message


def lwe_encrypt(
    key: np.ndarray,
    plaintext: int,
    noise_std: float,
    rng: CSPRNG,
    params_id: str,
) -> Ciphertext:
    """Encrypt one torus-encoded plaintext under a binary key."""
    body = lwe_encrypt_many(key, np.array([plaintext % TORUS_MODULUS], dtype=np.uint64), noise_std, rng)
    return Ciphertext(params_id=params_id, body=body[0])


def lwe_encrypt_many(
    key: np.ndarray,
    plaintexts: np.ndarray,
    noise_std: float,
    rng: CSPRNG,
) -> np.ndarray:
    """Encrypt a batch of torus plaintexts; returns an (m, n+1) uint64 matrix."""
    n = int(key.shape[0])
    m = int(plaintexts.shape[0])
    masks = rng.uniform_u64(m * n).reshape(m, n)
    noise = rng.torus_gaussian(m, noise_std)
    bodies = np.empty((m, n + 1), dtype=np.uint64)
    bodies[:, :n] = masks
    bodies[:, n] = masks @ key + noise + plaintexts.astype(np.uint64)
    return bodies


def lwe_phase(key: np.ndarray, body: np.ndarray) -> int:
    """b - <a, s> mod 2^64."""
    if body.shape[0] - 1 != key.shape[0]:
        raise ValueError(f"Ciphertext dimension {body.shape[0] - 1} does not match key dimension {key.shape[0]}")
    inner = int((body[:-1] * key).sum(dtype=np.uint64))
    return (int(body[-1]) - inner) % TORUS_MODULUS


def gadget_decompose(values: np.ndarray, base_log: int, level: int) -> np.ndarray:
    """
    Round each torus value to base_log * level bits and split it into
    `level` unsigned digits in base 2^base_log, most significant first.

    Returns an (len(values), level) uint64 matrix.
    """
    total = base_log * level
    values = values.astype(np.uint64)
    if total < TORUS_BITS:
        shift = np.uint64(TORUS_BITS - total)
        rounded = (values >> shift) + ((values >> (shift - np.uint64(1))) & np.uint64(1))
        rounded &= np.uint64((1 << total) - 1)
    else:
        rounded = values
    digit_mask = np.uint64((1 << base_log) - 1)
    digits = np.empty((values.shape[0], level), dtype=np.uint64)
    for j in range(level):
        digits[:, j] = (rounded >> np.uint64(base_log * (level - 1 - j))) & digit_mask
    return digits


@dataclass(frozen=True, eq=False)
class KeySwitchKey:
    """
    Gadget key-switching key from an input key to an output key.

    Row (i, j) is an LWE encryption under the output key of
    s_in[i] * 2^(64 - base_log * (j + 1)). Holds no secret material.
    """

    input_params_id: str
    output_params_id: str
    base_log: int
    level: int
    input_dimension: int
    output_dimension: int
    matrix: np.ndarray = field(repr=False)

    def __post_init__(self):
        matrix = np.array(self.matrix, dtype=np.uint64, copy=True)
        expected = (self.input_dimension * self.level, self.output_dimension + 1)
        if matrix.shape != expected:
            raise ValueError(f"Key-switching matrix shape {matrix.shape} != {expected}")
        matrix.setflags(write=False)
        object.__setattr__(self, "matrix", matrix)

    @classmethod
    def generate(
        cls,
        input_key: np.ndarray,
        output_key: np.ndarray,
        base_log: int,
        level: int,
        noise_std: float,
        rng: CSPRNG,
        input_params_id: str,
        output_params_id: str,
    ) -> "KeySwitchKey":
        gadgets = np.array(
            [1 << (TORUS_BITS - base_log * (j + 1)) for j in range(level)], dtype=np.uint64
        )
        plaintexts = (input_key.astype(np.uint64)[:, None] * gadgets[None, :]).reshape(-1)
        matrix = lwe_encrypt_many(output_key, plaintexts, noise_std, rng)
        return cls(
            input_params_id=input_params_id,
            output_params_id=output_params_id,
            base_log=base_log,
            level=level,
            input_dimension=int(input_key.shape[0]),
            output_dimension=int(output_key.shape[0]),
            matrix=matrix,
        )

    def apply(self, body: np.ndarray) -> np.ndarray:
        """Key-switch one LWE body; returns a new body under the output key."""
        if body.shape[0] != self.input_dimension + 1:
            raise ValueError(
                f"Ciphertext dimension {body.shape[0] - 1} does not match key-switch input {self.input_dimension}"
            )
        digits = gadget_decompose(body[:-1], self.base_log, self.level).reshape(-1)
        acc = digits @ self.matrix
        out = np.zeros(self.output_dimension + 1, dtype=np.uint64) - acc
        out[-1] = (int(body[-1]) - int(acc[-1])) % TORUS_MODULUS
        return out

    def fingerprint(self) -> str:
        return f"sha256:{hashlib.sha256(self.matrix.tobytes()).hexdigest()[:16]}"
