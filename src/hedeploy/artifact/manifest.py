"""
Artifact manifest schema.

`manifest.json` at the container root is the versioned contract between the
prototyping environment that compiles circuits and the deployment
environment that loads them.
"""

import hashlib
import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..lwe.core import MAX_BIT_WIDTH, CryptoParams, KeyStorageChoice

MANIFEST_NAME = "manifest.json"
CIRCUIT_DIR = "circuits/"


def canonical_bytes(obj: Any) -> bytes:
    """Canonical JSON encoding: sorted keys, no whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class ParamsModel(BaseModel):
    """Crypto parameter set as written in the manifest."""

    lwe_dimension: int = Field(gt=0)
    glwe_dimension: int = Field(gt=0)
    polynomial_size: int = Field(gt=0)
    pbs_base_log: int = Field(gt=0)
    pbs_level: int = Field(gt=0)
    lwe_noise: float = Field(gt=0.0, lt=0.25, description="Std-dev as a fraction of the modulus")
    glwe_noise: float = Field(gt=0.0, lt=0.25, description="Std-dev as a fraction of the modulus")
    key_storage_choice: KeyStorageChoice = KeyStorageChoice.BIG
    ks_base_log: int = Field(default=4, gt=0)
    ks_level: int = Field(default=6, gt=0)

    def to_params(self) -> CryptoParams:
        return CryptoParams.from_dict(self.model_dump(mode="json"))

    @classmethod
    def from_params(cls, params: CryptoParams) -> "ParamsModel":
        return cls(**params.to_dict())


class ArgModel(BaseModel):
    name: str
    bit_width: int = Field(ge=1, le=MAX_BIT_WIDTH)
    signed: bool = False
    role: Literal["encrypted-internal", "encrypted-external", "clear"] = "encrypted-internal"
    params: Optional[str] = Field(default=None, description="parameter_sets key; external arguments only")


class CircuitRef(BaseModel):
    path: str
    length: int = Field(ge=0)
    sha256: str = Field(pattern=r"^[0-9a-f]{64}$")


class FunctionModel(BaseModel):
    name: str = Field(min_length=1)
    params: str = Field(description="parameter_sets key the circuit was compiled for")
    inputs: List[ArgModel] = Field(default_factory=list)
    outputs: List[ArgModel]
    circuit: CircuitRef


class ProducerInfo(BaseModel):
    name: str = "unknown"
    version: str = "0.0.0"


class ArtifactManifest(BaseModel):
    format_version: int
    producer: ProducerInfo = Field(default_factory=ProducerInfo)
    required_features: List[str] = Field(default_factory=list)
    parameter_sets: Dict[str, ParamsModel]
    functions: List[FunctionModel]

    def canonical_bytes(self) -> bytes:
        return canonical_bytes(self.model_dump(mode="json"))

    def get_hash(self) -> str:
        return f"sha256:{hashlib.sha256(self.canonical_bytes()).hexdigest()}"
