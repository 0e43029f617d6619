"""
Artifact Loader.

Turns an Artifact Container into a validated ModuleDescriptor. Loading is
pure: it reads the container and nothing else, and any failure raises
before a descriptor exists.

Validation order:
    1. manifest.json present and valid JSON
    2. format_version inside the accepted range
    3. manifest schema
    4. required features supported by the engine
    5. circuit blobs present with the declared length and SHA-256
    6. argument specs consistent with their parameter sets
"""

import hashlib
import json
import logging
import os
import zipfile
import zlib
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from pydantic import ValidationError

from ..errors import ConfigValidationError, CorruptArtifact, IncompatibleVersion, UnsupportedFeature
from ..lwe.core import CryptoParams
from ..module.descriptor import ArgRole, ArgSpec, CircuitHandle, FunctionSpec, ModuleDescriptor
from ..module.engine import LINEAR_FEATURE, EvaluationEngine
from ..utils.config import BUILD_MAX_FORMAT_VERSION, BUILD_MIN_FORMAT_VERSION, get_settings
from .container import ArtifactContainer
from .manifest import CIRCUIT_DIR, MANIFEST_NAME, ArgModel, ArtifactManifest, FunctionModel

logger = logging.getLogger(__name__)

ArtifactSource = Union[str, "os.PathLike[str]", bytes, ArtifactContainer]


class ArtifactLoader:
    """
    Loads artifact containers for one deployment environment.

    Args:
        engine: Evaluation engine whose features gate loading
        supported_features: Feature set to use when no engine is given
            (defaults to the reference linear engine's)
        min_version / max_version: Accepted format_version range; defaults
            come from settings and must lie inside the build's range
        max_blob_size: Largest circuit blob accepted
    """

    def __init__(
        self,
        engine: Optional[EvaluationEngine] = None,
        supported_features: Optional[Iterable[str]] = None,
        min_version: Optional[int] = None,
        max_version: Optional[int] = None,
        max_blob_size: Optional[int] = None,
    ):
        settings = get_settings()
        if engine is not None:
            self.supported_features: FrozenSet[str] = frozenset(engine.supported_features)
        elif supported_features is not None:
            self.supported_features = frozenset(supported_features)
        else:
            self.supported_features = frozenset({LINEAR_FEATURE})

        lo, hi = settings.format_version_range()
        self.min_version = lo if min_version is None else min_version
        self.max_version = hi if max_version is None else max_version
        if self.min_version > self.max_version:
            raise ConfigValidationError("min_version", "greater than max_version")
        if self.min_version < BUILD_MIN_FORMAT_VERSION or self.max_version > BUILD_MAX_FORMAT_VERSION:
            raise ConfigValidationError(
                "format_version",
                f"range [{self.min_version}, {self.max_version}] exceeds build support "
                f"[{BUILD_MIN_FORMAT_VERSION}, {BUILD_MAX_FORMAT_VERSION}]",
            )
        self.max_blob_size = settings.MAX_BLOB_SIZE if max_blob_size is None else max_blob_size

    def load(self, source: ArtifactSource) -> ModuleDescriptor:
        """
        Load and validate an artifact.

        Args:
            source: Path, raw container bytes, or an open ArtifactContainer

        Raises:
            IncompatibleVersion: format_version outside the accepted range
            CorruptArtifact: Unreadable container, bad manifest or damaged blob
            UnsupportedFeature: Engine lacks a required feature
        """
        if isinstance(source, ArtifactContainer):
            return self._load_container(source)

        try:
            if isinstance(source, (bytes, bytearray)):
                container = ArtifactContainer.from_bytes(bytes(source))
            else:
                container = ArtifactContainer(source)
        except zipfile.BadZipFile as e:
            raise CorruptArtifact(f"not a valid container: {e}", component="container") from e
        with container:
            return self._load_container(container)

    def _load_container(self, container: ArtifactContainer) -> ModuleDescriptor:
        raw = self._read_manifest(container)
        self._check_version(raw)

        try:
            manifest = ArtifactManifest.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise CorruptArtifact(f"{e.error_count()} schema error(s); first at {location}: {first['msg']}") from e

        missing = set(manifest.required_features) - self.supported_features
        if missing:
            raise UnsupportedFeature(sorted(missing), sorted(self.supported_features))

        params = self._resolve_params(manifest)
        seen = set()
        for fn in manifest.functions:
            if fn.name in seen:
                raise CorruptArtifact(f"duplicate function name '{fn.name}'")
            seen.add(fn.name)
        blobs = {fn.name: self._read_circuit(container, fn) for fn in manifest.functions}
        functions = [self._build_function(fn, params, blobs[fn.name]) for fn in manifest.functions]

        try:
            descriptor = ModuleDescriptor(
                format_version=manifest.format_version,
                functions=tuple(functions),
                required_features=frozenset(manifest.required_features),
                producer=manifest.producer.model_dump(),
            )
        except ValueError as e:
            raise CorruptArtifact(str(e)) from e

        unused = set(params.values()) - set(descriptor.params)
        if unused:
            logger.warning("Artifact declares %d unreferenced parameter set(s)", len(unused))
        logger.info(
            "Loaded artifact: format_version=%d functions=%d params=%d producer=%s/%s",
            descriptor.format_version,
            len(descriptor),
            len(descriptor.params),
            manifest.producer.name,
            manifest.producer.version,
        )
        return descriptor

    def _read_manifest(self, container: ArtifactContainer) -> Dict:
        if not container.has_file(MANIFEST_NAME):
            raise CorruptArtifact(f"{MANIFEST_NAME} missing")
        try:
            raw = json.loads(container.read_file(MANIFEST_NAME).decode("utf-8"))
        except (ValueError, EOFError, NotImplementedError, zipfile.BadZipFile, zlib.error) as e:
            raise CorruptArtifact(f"unparsable manifest: {e}") from e
        if not isinstance(raw, dict):
            raise CorruptArtifact("manifest must be a JSON object")
        return raw

    def _check_version(self, raw: Dict) -> None:
        version = raw.get("format_version")
        if isinstance(version, bool) or not isinstance(version, int):
            raise CorruptArtifact("format_version missing or not an integer")
        if not self.min_version <= version <= self.max_version:
            raise IncompatibleVersion(version, self.min_version, self.max_version)

    def _resolve_params(self, manifest: ArtifactManifest) -> Dict[str, CryptoParams]:
        params: Dict[str, CryptoParams] = {}
        for key, model in manifest.parameter_sets.items():
            try:
                params[key] = model.to_params()
            except ValueError as e:
                raise CorruptArtifact(f"parameter set '{key}': {e}", component="parameter_sets") from e
        return params

    def _read_circuit(self, container: ArtifactContainer, fn: FunctionModel) -> bytes:
        ref = fn.circuit
        component = f"circuit:{fn.name}"
        path = ref.path
        if not path.startswith(CIRCUIT_DIR) or ".." in path.split("/"):
            raise CorruptArtifact(f"circuit path {path!r} outside {CIRCUIT_DIR}", component=component)
        if ref.length > self.max_blob_size:
            raise CorruptArtifact(f"declared length exceeds limit of {self.max_blob_size} bytes", component=component)
        if not container.has_file(path):
            raise CorruptArtifact(f"blob {path!r} missing", component=component)
        if container.file_size(path) != ref.length:
            raise CorruptArtifact("blob length does not match manifest", component=component)
        try:
            blob = container.read_file(path)
        except (ValueError, EOFError, NotImplementedError, zipfile.BadZipFile, zlib.error) as e:
            raise CorruptArtifact(f"unreadable blob: {e}", component=component) from e
        if len(blob) != ref.length:
            raise CorruptArtifact("blob length does not match manifest", component=component)
        if hashlib.sha256(blob).hexdigest() != ref.sha256:
            raise CorruptArtifact("blob checksum mismatch", component=component)
        return blob

    def _build_arg(self, arg: ArgModel, params: Dict[str, CryptoParams]) -> ArgSpec:
        if arg.role == ArgRole.ENCRYPTED_EXTERNAL.value:
            if arg.params is None:
                raise ValueError(f"external argument '{arg.name}' lacks a params reference")
            if arg.params not in params:
                raise ValueError(f"argument '{arg.name}' references unknown parameter set '{arg.params}'")
            crypto_params = params[arg.params]
        else:
            if arg.params is not None:
                raise ValueError(f"{arg.role} argument '{arg.name}' must not carry a params reference")
            crypto_params = None
        return ArgSpec(
            name=arg.name,
            bit_width=arg.bit_width,
            signed=arg.signed,
            role=ArgRole(arg.role),
            crypto_params=crypto_params,
        )

    def _build_function(self, fn: FunctionModel, params: Dict[str, CryptoParams], blob: bytes) -> FunctionSpec:
        try:
            if fn.params not in params:
                raise ValueError(f"circuit references unknown parameter set '{fn.params}'")
            inputs: List[ArgSpec] = [self._build_arg(a, params) for a in fn.inputs]
            outputs: List[ArgSpec] = [self._build_arg(a, params) for a in fn.outputs]
            return FunctionSpec(
                name=fn.name,
                inputs=tuple(inputs),
                outputs=tuple(outputs),
                circuit_handle=CircuitHandle(function=fn.name, blob=blob, sha256=fn.circuit.sha256),
                circuit_params=params[fn.params],
            )
        except ValueError as e:
            raise CorruptArtifact(str(e), component=f"function:{fn.name}") from e


def load(source: ArtifactSource, engine: Optional[EvaluationEngine] = None, **kwargs) -> ModuleDescriptor:
    """Load an artifact with a one-off ArtifactLoader."""
    return ArtifactLoader(engine=engine, **kwargs).load(source)
