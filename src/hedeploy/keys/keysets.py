"""
Client and Server Keysets.

Key Types:
    - SecretKeyMaterial: per parameter set, the binary LWE key and/or the
      flattened GLWE key. Client side only; never serialized in clear.
    - EvaluationKeys: per internal parameter set, the bootstrap key (LWE key
      encrypted under the GLWE key) and the keyswitch key (GLWE -> LWE).
    - Bridge keys: key-switching keys between two parameter sets, used by
      the ciphertext bridge.

Key Flow:
    1. KeysetManager builds (ClientKeyset, ServerKeyset) from a descriptor
    2. ServerKeyset.to_bytes() is shipped to the untrusted evaluator
    3. ClientKeyset stays inside the client boundary; it is persisted only
       through export(master_key), which wraps every secret with AES-256-GCM
"""

import base64
import hashlib
import json
import logging
import secrets
import struct
from dataclasses import dataclass, field
from io import BytesIO
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import KeyNotFound, NoBridgeKey
from ..lwe.core import Ciphertext, CryptoParams, Encoding, KeyStorageChoice, KeySwitchKey, lwe_encrypt, lwe_phase
from ..lwe.csprng import CSPRNG

logger = logging.getLogger(__name__)

NONCE_SIZE = 12  # AES-GCM nonce
SERVER_KEYSET_MAGIC = b"HESK"
SERVER_KEYSET_VERSION = 1
CLIENT_EXPORT_FORMAT = "hedeploy-client-keyset-v1"


def _binary_key(key: Optional[np.ndarray], expected: int, label: str) -> Optional[np.ndarray]:
    if key is None:
        return None
    arr = np.array(key, dtype=np.uint64, copy=True).reshape(-1)
    if arr.size != expected:
        raise ValueError(f"{label} has dimension {arr.size}, expected {expected}")
    if np.any(arr > 1):
        raise ValueError(f"{label} must be a binary vector")
    arr.setflags(write=False)
    return arr


def _key_digest(key: Optional[np.ndarray]) -> bytes:
    return b"" if key is None else key.astype(np.uint8).tobytes()


@dataclass(frozen=True, eq=False)
class ExternalSecretKey:
    """
    A secret key produced outside this system (bring-your-own-key).

    Tagged with the CryptoParams it belongs to; the key is a 0/1 vector of
    that parameter set's encryption-key dimension.
    """

    params: CryptoParams
    key: np.ndarray = field(repr=False)

    def __post_init__(self):
        object.__setattr__(
            self, "key", _binary_key(self.key, self.params.encryption_key_dimension, "external key")
        )

    @classmethod
    def generate(cls, params: CryptoParams, rng: CSPRNG) -> "ExternalSecretKey":
        """Stand-in for a key made by a third-party toolchain."""
        return cls(params=params, key=rng.binary(params.encryption_key_dimension))

    def same_key(self, other: "ExternalSecretKey") -> bool:
        return self.params == other.params and np.array_equal(self.key, other.key)

    def encrypt(self, value: int, bit_width: int, rng: CSPRNG, signed: bool = False) -> Ciphertext:
        """Encrypt as the external producer would."""
        encoding = Encoding(bit_width, signed)
        return lwe_encrypt(
            self.key, encoding.encode(value), self.params.encryption_noise, rng, self.params.params_id
        )

    def decrypt(self, ciphertext: Ciphertext, bit_width: int, signed: bool = False) -> int:
        if ciphertext.params_id != self.params.params_id:
            raise ValueError("Ciphertext is not tagged with this key's parameter set")
        return Encoding(bit_width, signed).decode(lwe_phase(self.key, ciphertext.body))

    def get_fingerprint(self) -> str:
        return f"sha256:{hashlib.sha256(_key_digest(self.key)).hexdigest()[:16]}"


@dataclass(frozen=True)
class KeyBinding:
    """Binds an external secret key to one external argument of one function."""

    function: str
    index: int
    key: ExternalSecretKey
    output: bool = False


@dataclass(frozen=True, eq=False)
class SecretKeyMaterial:
    """Secret keys for one parameter set."""

    params: CryptoParams
    lwe_key: Optional[np.ndarray] = field(default=None, repr=False)
    glwe_key: Optional[np.ndarray] = field(default=None, repr=False)
    bound: bool = False  # encryption key supplied through a KeyBinding

    def __post_init__(self):
        object.__setattr__(self, "lwe_key", _binary_key(self.lwe_key, self.params.lwe_dimension, "LWE key"))
        object.__setattr__(
            self, "glwe_key", _binary_key(self.glwe_key, self.params.glwe_key_dimension, "GLWE key")
        )
        if self.encryption_key is None:
            raise ValueError("Secret key material lacks the encryption key for its parameter set")

    @property
    def encryption_key(self) -> Optional[np.ndarray]:
        if self.params.key_storage_choice is KeyStorageChoice.BIG:
            return self.glwe_key
        return self.lwe_key

    @property
    def complete(self) -> bool:
        """Both keys present (needed to derive evaluation keys)."""
        return self.lwe_key is not None and self.glwe_key is not None

    def encrypt(self, plaintext: int, rng: CSPRNG) -> Ciphertext:
        return lwe_encrypt(
            self.encryption_key, plaintext, self.params.encryption_noise, rng, self.params.params_id
        )

    def phase(self, ciphertext: Ciphertext) -> int:
        if ciphertext.params_id != self.params.params_id:
            raise ValueError("Ciphertext is not tagged with this key's parameter set")
        return lwe_phase(self.encryption_key, ciphertext.body)

    def digest(self) -> bytes:
        h = hashlib.sha256()
        h.update(self.params.params_id.encode())
        h.update(_key_digest(self.lwe_key))
        h.update(b"|")
        h.update(_key_digest(self.glwe_key))
        return h.digest()


ArgEncodings = Tuple[Tuple[Encoding, ...], Tuple[Encoding, ...]]


class ClientKeyset:
    """
    Secret half of a module's keys: CryptoParams -> SecretKeyMaterial plus
    the per-function encoding tables. Read-only after construction.

    MUST stay inside the trusted client boundary.
    """

    def __init__(
        self,
        materials: Mapping[str, SecretKeyMaterial],
        encodings: Optional[Mapping[str, ArgEncodings]] = None,
    ):
        self._materials = MappingProxyType(dict(materials))
        self._encodings = MappingProxyType(dict(encodings or {}))

    @property
    def params(self) -> Tuple[CryptoParams, ...]:
        return tuple(m.params for m in self._materials.values())

    @property
    def encodings(self) -> Mapping[str, ArgEncodings]:
        return self._encodings

    def __contains__(self, params: object) -> bool:
        return isinstance(params, CryptoParams) and params.params_id in self._materials

    def material(self, params: CryptoParams) -> SecretKeyMaterial:
        try:
            return self._materials[params.params_id]
        except KeyError:
            raise KeyNotFound(params.params_id, keyset="client") from None

    def encrypt(self, params: CryptoParams, plaintext: int, rng: CSPRNG) -> Ciphertext:
        return self.material(params).encrypt(plaintext, rng)

    def phase(self, params: CryptoParams, ciphertext: Ciphertext) -> int:
        return self.material(params).phase(ciphertext)

    def fingerprint(self) -> str:
        """Digest over all secret material; equal digests mean bit-identical keysets."""
        h = hashlib.sha256()
        for params_id in self._materials:
            h.update(self._materials[params_id].digest())
        return f"sha256:{h.hexdigest()}"

    def export(self, master_key: bytes) -> bytes:
        """Serialize with every secret wrapped under a 32-byte AES-GCM master key."""
        if len(master_key) != 32:
            raise ValueError("Master key must be 32 bytes")
        aesgcm = AESGCM(master_key)

        def wrap(key: Optional[np.ndarray], aad: bytes) -> Optional[str]:
            if key is None:
                return None
            nonce = secrets.token_bytes(NONCE_SIZE)
            return base64.b64encode(nonce + aesgcm.encrypt(nonce, key.astype(np.uint8).tobytes(), aad)).decode(
                "ascii"
            )

        entries = []
        for material in self._materials.values():
            aad = material.params.params_id.encode()
            entries.append(
                {
                    "params": material.params.to_dict(),
                    "bound": material.bound,
                    "lwe_key": wrap(material.lwe_key, aad + b"/lwe"),
                    "glwe_key": wrap(material.glwe_key, aad + b"/glwe"),
                }
            )
        encodings = {
            name: [[[e.bit_width, e.signed] for e in ins], [[e.bit_width, e.signed] for e in outs]]
            for name, (ins, outs) in self._encodings.items()
        }
        doc = {"format": CLIENT_EXPORT_FORMAT, "keys": entries, "encodings": encodings}
        return json.dumps(doc, sort_keys=True).encode("utf-8")

    @classmethod
    def import_wrapped(cls, data: bytes, master_key: bytes) -> "ClientKeyset":
        """Inverse of export(); raises cryptography's InvalidTag on a wrong master key."""
        doc = json.loads(data.decode("utf-8"))
        if doc.get("format") != CLIENT_EXPORT_FORMAT:
            raise ValueError(f"Unknown client keyset format: {doc.get('format')!r}")
        aesgcm = AESGCM(master_key)

        def unwrap(blob: Optional[str], aad: bytes) -> Optional[np.ndarray]:
            if blob is None:
                return None
            raw = base64.b64decode(blob)
            plain = aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], aad)
            return np.frombuffer(plain, dtype=np.uint8).astype(np.uint64)

        materials: Dict[str, SecretKeyMaterial] = {}
        for entry in doc["keys"]:
            params = CryptoParams.from_dict(entry["params"])
            aad = params.params_id.encode()
            materials[params.params_id] = SecretKeyMaterial(
                params=params,
                lwe_key=unwrap(entry["lwe_key"], aad + b"/lwe"),
                glwe_key=unwrap(entry["glwe_key"], aad + b"/glwe"),
                bound=entry.get("bound", False),
            )
        encodings = {
            name: (
                tuple(Encoding(bw, signed) for bw, signed in ins),
                tuple(Encoding(bw, signed) for bw, signed in outs),
            )
            for name, (ins, outs) in doc.get("encodings", {}).items()
        }
        return cls(materials, encodings)

    def __repr__(self) -> str:
        return f"ClientKeyset(params={len(self._materials)}, fingerprint={self.fingerprint()[:23]})"


@dataclass(frozen=True, eq=False)
class EvaluationKeys:
    """Public evaluation material for one internal parameter set."""

    params: CryptoParams
    bootstrap_key: KeySwitchKey
    keyswitch_key: KeySwitchKey


class ServerKeyset:
    """
    Public half of a module's keys. Contains no secret material and is safe
    to hand to an untrusted evaluator. Read-only after construction.
    """

    def __init__(
        self,
        evaluation_keys: Mapping[str, EvaluationKeys],
        bridge_keys: Mapping[Tuple[str, str], KeySwitchKey],
    ):
        self._evaluation_keys = MappingProxyType(dict(evaluation_keys))
        self._bridge_keys = MappingProxyType(dict(bridge_keys))

    @property
    def params(self) -> Tuple[CryptoParams, ...]:
        return tuple(ek.params for ek in self._evaluation_keys.values())

    @property
    def bridge_pairs(self) -> Tuple[Tuple[str, str], ...]:
        return tuple(self._bridge_keys)

    def has_evaluation_keys(self, params_id: str) -> bool:
        return params_id in self._evaluation_keys

    def evaluation_keys(self, params_id: str) -> EvaluationKeys:
        try:
            return self._evaluation_keys[params_id]
        except KeyError:
            raise KeyNotFound(params_id, keyset="server") from None

    def has_bridge_key(self, from_params_id: str, to_params_id: str) -> bool:
        return (from_params_id, to_params_id) in self._bridge_keys

    def bridge_key(self, from_params_id: str, to_params_id: str) -> KeySwitchKey:
        try:
            return self._bridge_keys[(from_params_id, to_params_id)]
        except KeyError:
            raise NoBridgeKey(from_params_id, to_params_id) from None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _entries(self):
        for params_id, ek in self._evaluation_keys.items():
            yield {"kind": "bootstrap", "params": ek.params.to_dict()}, ek.bootstrap_key
            yield {"kind": "keyswitch", "params": ek.params.to_dict()}, ek.keyswitch_key
        for (src, dst), key in self._bridge_keys.items():
            yield {"kind": "bridge", "from": src, "to": dst}, key

    def to_bytes(self) -> bytes:
        """Deterministic binary encoding: JSON index followed by raw matrices."""
        index = []
        blobs = []
        offset = 0
        for meta, key in self._entries():
            raw = key.matrix.astype("<u8").tobytes()
            entry = dict(meta)
            entry.update(
                {
                    "input_params_id": key.input_params_id,
                    "output_params_id": key.output_params_id,
                    "base_log": key.base_log,
                    "level": key.level,
                    "input_dimension": key.input_dimension,
                    "output_dimension": key.output_dimension,
                    "offset": offset,
                    "length": len(raw),
                }
            )
            index.append(entry)
            blobs.append(raw)
            offset += len(raw)
        header = json.dumps(index, sort_keys=True, separators=(",", ":")).encode("utf-8")

        buf = BytesIO()
        buf.write(SERVER_KEYSET_MAGIC)
        buf.write(struct.pack(">B", SERVER_KEYSET_VERSION))
        buf.write(struct.pack(">I", len(header)))
        buf.write(header)
        for raw in blobs:
            buf.write(raw)
        return buf.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "ServerKeyset":
        buf = BytesIO(data)
        if buf.read(4) != SERVER_KEYSET_MAGIC:
            raise ValueError("Invalid server keyset magic")
        (version,) = struct.unpack(">B", buf.read(1))
        if version > SERVER_KEYSET_VERSION:
            raise ValueError(f"Unsupported server keyset version: {version}")
        (header_len,) = struct.unpack(">I", buf.read(4))
        index = json.loads(buf.read(header_len).decode("utf-8"))
        body = buf.read()

        partial: Dict[str, Dict[str, Any]] = {}
        bridge_keys: Dict[Tuple[str, str], KeySwitchKey] = {}
        for entry in index:
            raw = body[entry["offset"] : entry["offset"] + entry["length"]]
            if len(raw) != entry["length"]:
                raise ValueError("Truncated server keyset")
            rows = entry["input_dimension"] * entry["level"]
            matrix = np.frombuffer(raw, dtype="<u8").astype(np.uint64).reshape(rows, entry["output_dimension"] + 1)
            key = KeySwitchKey(
                input_params_id=entry["input_params_id"],
                output_params_id=entry["output_params_id"],
                base_log=entry["base_log"],
                level=entry["level"],
                input_dimension=entry["input_dimension"],
                output_dimension=entry["output_dimension"],
                matrix=matrix,
            )
            if entry["kind"] == "bridge":
                bridge_keys[(entry["from"], entry["to"])] = key
            else:
                params = CryptoParams.from_dict(entry["params"])
                slot = partial.setdefault(params.params_id, {"params": params})
                slot[entry["kind"]] = key

        evaluation_keys = {
            params_id: EvaluationKeys(
                params=slot["params"], bootstrap_key=slot["bootstrap"], keyswitch_key=slot["keyswitch"]
            )
            for params_id, slot in partial.items()
        }
        return cls(evaluation_keys, bridge_keys)

    def fingerprint(self) -> str:
        return f"sha256:{hashlib.sha256(self.to_bytes()).hexdigest()}"

    def __repr__(self) -> str:
        return f"ServerKeyset(params={len(self._evaluation_keys)}, bridges={len(self._bridge_keys)})"
