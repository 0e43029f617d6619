"""
Artifact Builder.

Prototyping-side writer: collects compiled circuits and their signatures
and emits an Artifact Container. Output is deterministic, so building the
same module twice gives identical bytes.
"""

import hashlib
import io
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from .. import __version__
from ..lwe.core import CryptoParams
from ..module.descriptor import ArgSpec, CircuitHandle, FunctionSpec
from ..utils.config import BUILD_MAX_FORMAT_VERSION
from .container import ArtifactContainer
from .manifest import (
    CIRCUIT_DIR,
    MANIFEST_NAME,
    ArgModel,
    ArtifactManifest,
    CircuitRef,
    FunctionModel,
    ParamsModel,
    ProducerInfo,
)

logger = logging.getLogger(__name__)

_FUNCTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ArtifactBuilder:
    """
    Assembles an artifact container.

    Usage:
        builder = ArtifactBuilder(required_features=["lwe-linear"])
        builder.add_function("inc", inputs=[ArgSpec("x", 8)], outputs=[ArgSpec("y", 8)],
                             circuit=blob, circuit_params=params)
        data = builder.to_bytes()
    """

    def __init__(
        self,
        format_version: int = BUILD_MAX_FORMAT_VERSION,
        required_features: Iterable[str] = (),
        producer_name: str = "hedeploy",
        producer_version: str = __version__,
    ):
        self.format_version = format_version
        self.required_features: List[str] = []
        for feature in required_features:
            self.require_feature(feature)
        self.producer = ProducerInfo(name=producer_name, version=producer_version)
        self._params: Dict[str, CryptoParams] = {}
        self._functions: List[FunctionSpec] = []

    def require_feature(self, feature: str) -> None:
        if feature not in self.required_features:
            self.required_features.append(feature)

    def add_parameter_set(self, params: CryptoParams, key: Optional[str] = None) -> str:
        """Register a parameter set; returns its manifest key. Equal sets share one key."""
        for existing_key, existing in self._params.items():
            if existing == params:
                return existing_key
        key = key or f"params-{len(self._params)}"
        if key in self._params:
            raise ValueError(f"parameter set key '{key}' already used")
        self._params[key] = params
        return key

    def _params_key(self, params: CryptoParams) -> str:
        return self.add_parameter_set(params)

    def add_function(
        self,
        name: str,
        inputs: Sequence[ArgSpec],
        outputs: Sequence[ArgSpec],
        circuit: bytes,
        circuit_params: CryptoParams,
    ) -> FunctionSpec:
        """
        Add one compiled function.

        Raises:
            ValueError: Invalid name, duplicate name, or inconsistent signature
        """
        if not _FUNCTION_NAME.match(name):
            raise ValueError(f"function name {name!r} must be an identifier")
        if any(fn.name == name for fn in self._functions):
            raise ValueError(f"duplicate function name '{name}'")
        spec = FunctionSpec(
            name=name,
            inputs=tuple(inputs),
            outputs=tuple(outputs),
            circuit_handle=CircuitHandle(function=name, blob=bytes(circuit)),
            circuit_params=circuit_params,
        )
        for params in spec.referenced_params():
            self._params_key(params)
        self._functions.append(spec)
        return spec

    def add_function_spec(self, spec: FunctionSpec) -> FunctionSpec:
        return self.add_function(
            spec.name, spec.inputs, spec.outputs, spec.circuit_handle.blob, spec.circuit_params
        )

    @staticmethod
    def _circuit_path(name: str) -> str:
        return f"{CIRCUIT_DIR}{name}.bin"

    def _arg_model(self, arg: ArgSpec) -> ArgModel:
        return ArgModel(
            name=arg.name,
            bit_width=arg.bit_width,
            signed=arg.signed,
            role=arg.role.value,
            params=self._params_key(arg.crypto_params) if arg.external else None,
        )

    def manifest(self) -> ArtifactManifest:
        functions = [
            FunctionModel(
                name=spec.name,
                params=self._params_key(spec.circuit_params),
                inputs=[self._arg_model(a) for a in spec.inputs],
                outputs=[self._arg_model(a) for a in spec.outputs],
                circuit=CircuitRef(
                    path=self._circuit_path(spec.name),
                    length=spec.circuit_handle.length,
                    sha256=spec.circuit_handle.sha256,
                ),
            )
            for spec in self._functions
        ]
        return ArtifactManifest(
            format_version=self.format_version,
            producer=self.producer,
            required_features=list(self.required_features),
            parameter_sets={key: ParamsModel.from_params(p) for key, p in self._params.items()},
            functions=functions,
        )

    def write_to(self, container: ArtifactContainer) -> None:
        manifest = self.manifest()
        container.write_file(MANIFEST_NAME, manifest.canonical_bytes())
        for spec in self._functions:
            container.write_file(self._circuit_path(spec.name), spec.circuit_handle.blob)

    def to_bytes(self) -> bytes:
        buf = io.BytesIO()
        with ArtifactContainer(buf, mode="w") as container:
            self.write_to(container)
        data = buf.getvalue()
        logger.info(
            "Built artifact: functions=%d params=%d sha256=%s",
            len(self._functions),
            len(self._params),
            hashlib.sha256(data).hexdigest()[:16],
        )
        return data

    def write(self, path: str) -> str:
        """Write the container to `path`; returns its SHA-256."""
        data = self.to_bytes()
        with open(path, "wb") as f:
            f.write(data)
        return hashlib.sha256(data).hexdigest()
