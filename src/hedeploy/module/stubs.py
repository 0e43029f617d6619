"""
Client and Server Stubs.

Stubs are built at runtime from FunctionSpecs by factory, instead of being
generated as static types per function. ClientModule and ServerModule form
the registry: both look stubs up by function name.

Call flow:
    client: ClientStub.prepare_inputs(*plaintexts) -> CallFrame
    server: ServerStub.invoke(server_keyset, frame) -> CallFrame
    client: ClientStub.process_outputs(frame) -> plaintexts
"""

import logging
import struct
import zlib
from numbers import Integral
from typing import Dict, List, Optional, Tuple

from ..errors import ArityMismatch, EvaluationError, HEDeployError, TypeMismatch, UnsupportedFeature
from ..keys.bridge import CiphertextBridge
from ..keys.keysets import ClientKeyset, ServerKeyset
from ..logging import LogContext
from ..lwe.core import Ciphertext, Encoding
from ..lwe.csprng import CSPRNG
from .descriptor import ArgSpec, FunctionSpec, ModuleDescriptor
from .engine import EvaluationEngine
from .frames import CallFrame, FrameValue

logger = logging.getLogger(__name__)


def _check_plain(spec: FunctionSpec, arg: ArgSpec, encoding: Encoding, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise TypeMismatch(
            f"expected an integer, got {type(value).__name__}", function=spec.name, argument=arg.name
        )
    value = int(value)
    if not encoding.fits(value):
        raise TypeMismatch(
            f"value outside [{encoding.min_value}, {encoding.max_value}]", function=spec.name, argument=arg.name
        )
    return value


class ClientStub:
    """
    Client side of one function: encrypts inputs and decrypts outputs.

    Args:
        spec: Function signature
        client_keyset: Secret keys; must cover every encrypted argument
        encryption_rng: Randomness for fresh encryptions

    Raises:
        KeyNotFound: Keyset lacks a parameter set the function uses
    """

    def __init__(self, spec: FunctionSpec, client_keyset: ClientKeyset, encryption_rng: CSPRNG):
        self.spec = spec
        self._keyset = client_keyset
        self._rng = encryption_rng

        for arg in spec.inputs + spec.outputs:
            params = spec.params_for(arg)
            if params is not None:
                client_keyset.material(params)

        table = client_keyset.encodings.get(spec.name)
        if table is None:
            table = (tuple(a.encoding for a in spec.inputs), tuple(a.encoding for a in spec.outputs))
        elif len(table[0]) != len(spec.inputs) or len(table[1]) != len(spec.outputs):
            raise TypeMismatch("client keyset encodings do not match the function signature", function=spec.name)
        self._input_encodings, self._output_encodings = table

    @property
    def name(self) -> str:
        return self.spec.name

    def prepare_inputs(self, *plaintexts: int) -> CallFrame:
        """Encode and encrypt one call's arguments."""
        spec = self.spec
        if len(plaintexts) != len(spec.inputs):
            raise ArityMismatch(spec.name, len(spec.inputs), len(plaintexts))

        values: List[FrameValue] = []
        for arg, encoding, value in zip(spec.inputs, self._input_encodings, plaintexts):
            value = _check_plain(spec, arg, encoding, value)
            if arg.encrypted:
                values.append(self._keyset.encrypt(spec.params_for(arg), encoding.encode(value), self._rng))
            else:
                values.append(value)
        return CallFrame(function=spec.name, values=tuple(values))

    def process_outputs(self, frame: CallFrame) -> List[int]:
        """Decrypt and decode a result frame."""
        spec = self.spec
        if frame.function != spec.name:
            raise TypeMismatch(f"frame belongs to function '{frame.function}'", function=spec.name)
        if len(frame.values) != len(spec.outputs):
            raise ArityMismatch(spec.name, len(spec.outputs), len(frame.values), direction="outputs")

        results = []
        for arg, encoding, value in zip(spec.outputs, self._output_encodings, frame.values):
            params = spec.params_for(arg)
            if not isinstance(value, Ciphertext) or value.params_id != params.params_id:
                raise TypeMismatch("output is not a ciphertext under its declared parameter set",
                                   function=spec.name, argument=arg.name)
            results.append(encoding.decode(self._keyset.phase(params, value)))
        return results

    def __call__(self, *plaintexts: int) -> CallFrame:
        return self.prepare_inputs(*plaintexts)

    def __repr__(self) -> str:
        return f"ClientStub({self.spec.signature()})"


class ServerStub:
    """
    Server side of one function: bridges, evaluates, bridges back.

    When a server keyset is given at construction, its evaluation keys and
    every bridge key this function needs are checked up front.

    Raises:
        KeyNotFound: No evaluation keys for the circuit parameters
        NoBridgeKey: A required bridge key is missing
    """

    def __init__(
        self,
        spec: FunctionSpec,
        engine: EvaluationEngine,
        server_keyset: Optional[ServerKeyset] = None,
        bridge: Optional[CiphertextBridge] = None,
    ):
        self.spec = spec
        self.engine = engine
        self.bridge = bridge or CiphertextBridge()
        if server_keyset is not None:
            server_keyset.evaluation_keys(spec.circuit_params.params_id)
            self.bridge.validate(spec.bridge_pairs(), server_keyset)

    @property
    def name(self) -> str:
        return self.spec.name

    def _check_inputs(self, frame: CallFrame) -> None:
        spec = self.spec
        if frame.function != spec.name:
            raise TypeMismatch(f"frame belongs to function '{frame.function}'", function=spec.name)
        if len(frame.values) != len(spec.inputs):
            raise ArityMismatch(spec.name, len(spec.inputs), len(frame.values))
        for arg, value in zip(spec.inputs, frame.values):
            if arg.encrypted:
                params = spec.params_for(arg)
                if not isinstance(value, Ciphertext) or value.params_id != params.params_id:
                    raise TypeMismatch("expected a ciphertext under the declared parameter set",
                                       function=spec.name, argument=arg.name)
            elif isinstance(value, Ciphertext) or isinstance(value, bool) or not isinstance(value, Integral):
                raise TypeMismatch("expected a clear integer", function=spec.name, argument=arg.name)
            elif not arg.encoding.fits(int(value)):
                raise TypeMismatch(
                    f"clear value outside [{arg.encoding.min_value}, {arg.encoding.max_value}]",
                    function=spec.name,
                    argument=arg.name,
                )

    def invoke(self, server_keyset: ServerKeyset, frame: CallFrame) -> CallFrame:
        """
        Evaluate one call.

        Raises:
            ArityMismatch / TypeMismatch: Frame does not fit the signature
            NoBridgeKey: A bridge key is missing from the keyset
            EvaluationError: The engine failed or returned malformed outputs
        """
        spec = self.spec
        self._check_inputs(frame)

        inputs: List[FrameValue] = []
        for arg, value in zip(spec.inputs, frame.values):
            if arg.external:
                value = self.bridge.convert(value, arg.crypto_params, spec.circuit_params, server_keyset)
            inputs.append(value)

        try:
            outputs = self.engine.evaluate(spec.circuit_handle, server_keyset, inputs)
        except HEDeployError:
            raise
        except Exception as e:
            raise EvaluationError(f"{type(e).__name__}: {e}", function=spec.name) from e

        outputs = list(outputs)
        if len(outputs) != len(spec.outputs):
            raise EvaluationError(
                f"engine returned {len(outputs)} outputs, expected {len(spec.outputs)}", function=spec.name
            )
        results: List[FrameValue] = []
        for arg, value in zip(spec.outputs, outputs):
            if not isinstance(value, Ciphertext) or value.params_id != spec.circuit_params.params_id:
                raise EvaluationError(f"output '{arg.name}' is not under the circuit parameters", function=spec.name)
            if arg.external:
                value = self.bridge.convert(value, spec.circuit_params, arg.crypto_params, server_keyset)
            results.append(value)

        logger.debug("Invoked %s: %d inputs, %d outputs", spec.name, len(inputs), len(results))
        return CallFrame(function=spec.name, values=tuple(results))

    def __repr__(self) -> str:
        return f"ServerStub({self.spec.signature()})"


class ClientModule:
    """
    Registry of client stubs for a loaded module.

    Stubs are built at construction, so a keyset missing a parameter set
    fails here with KeyNotFound rather than on first call.
    """

    def __init__(self, descriptor: ModuleDescriptor, client_keyset: ClientKeyset, encryption_rng: CSPRNG):
        self.descriptor = descriptor
        self.client_keyset = client_keyset
        self._stubs: Dict[str, ClientStub] = {
            spec.name: ClientStub(spec, client_keyset, encryption_rng) for spec in descriptor
        }

    @property
    def functions(self) -> List[str]:
        return self.descriptor.function_names

    def stub(self, name: str) -> ClientStub:
        """
        Raises:
            UnknownFunction: No function with this name
        """
        self.descriptor.function(name)
        return self._stubs[name]

    def __getitem__(self, name: str) -> ClientStub:
        return self.stub(name)


class ServerModule:
    """
    Registry of server stubs for a loaded module.

    All stubs are built (and their keys validated) at construction, so
    configuration errors surface before the first call.
    """

    def __init__(
        self,
        descriptor: ModuleDescriptor,
        server_keyset: ServerKeyset,
        engine: EvaluationEngine,
        bridge: Optional[CiphertextBridge] = None,
    ):
        missing = set(descriptor.required_features) - set(engine.supported_features)
        if missing:
            raise UnsupportedFeature(sorted(missing), sorted(engine.supported_features))
        self.descriptor = descriptor
        self.server_keyset = server_keyset
        self.engine = engine
        self.bridge = bridge or CiphertextBridge()
        self._stubs: Dict[str, ServerStub] = {
            spec.name: ServerStub(spec, engine, server_keyset, self.bridge) for spec in descriptor
        }
        logger.info("Server module ready: %d functions", len(self._stubs))

    @property
    def functions(self) -> List[str]:
        return self.descriptor.function_names

    def stub(self, name: str) -> ServerStub:
        """
        Raises:
            UnknownFunction: No function with this name
        """
        self.descriptor.function(name)
        return self._stubs[name]

    def __getitem__(self, name: str) -> ServerStub:
        return self.stub(name)

    def invoke(self, frame: CallFrame) -> CallFrame:
        """Dispatch a call frame to the stub named by frame.function."""
        stub = self.stub(frame.function)
        with LogContext(function=frame.function):
            return stub.invoke(self.server_keyset, frame)

    def invoke_bytes(self, data: bytes) -> bytes:
        """Wire-level entry point: serialized frame in, serialized frame out."""
        try:
            frame = CallFrame.from_bytes(data)
        except (ValueError, struct.error, zlib.error) as e:
            raise TypeMismatch(f"malformed call frame: {e}") from e
        return self.invoke(frame).to_bytes()


def build_stubs(
    descriptor: ModuleDescriptor,
    client_keyset: ClientKeyset,
    server_keyset: ServerKeyset,
    engine: EvaluationEngine,
    encryption_rng: CSPRNG,
) -> Tuple[ClientModule, ServerModule]:
    """Build both registries for a module."""
    return (
        ClientModule(descriptor, client_keyset, encryption_rng),
        ServerModule(descriptor, server_keyset, engine),
    )
