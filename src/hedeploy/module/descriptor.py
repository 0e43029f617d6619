"""
Module Descriptor / Function Registry.

The in-memory description of a loaded artifact: every exposed function with
its typed signature, its circuit handle and the internal parameter set the
circuit was compiled for, plus the ordered set of distinct parameter sets
the module references. Stub factories and the keyset manager read from it;
it is immutable once built.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple

from ..errors import UnknownFunction
from ..lwe.core import MAX_BIT_WIDTH, CryptoParams, Encoding


class ArgRole(str, Enum):
    """How an argument crosses the client/server boundary."""

    ENCRYPTED_INTERNAL = "encrypted-internal"
    ENCRYPTED_EXTERNAL = "encrypted-external"
    CLEAR = "clear"


@dataclass(frozen=True)
class ArgSpec:
    """
    One input or output of a function.

    External arguments carry the CryptoParams of the externally produced
    ciphertexts; internal and clear arguments must not.
    """

    name: str
    bit_width: int
    signed: bool = False
    role: ArgRole = ArgRole.ENCRYPTED_INTERNAL
    crypto_params: Optional[CryptoParams] = None

    def __post_init__(self):
        object.__setattr__(self, "role", ArgRole(self.role))
        if isinstance(self.bit_width, bool) or not isinstance(self.bit_width, int):
            raise ValueError(f"argument '{self.name}': bit_width must be an integer")
        if not 1 <= self.bit_width <= MAX_BIT_WIDTH:
            raise ValueError(f"argument '{self.name}': bit_width {self.bit_width} outside [1, {MAX_BIT_WIDTH}]")
        if self.role is ArgRole.ENCRYPTED_EXTERNAL and self.crypto_params is None:
            raise ValueError(f"argument '{self.name}': external arguments require a crypto_params block")
        if self.role is not ArgRole.ENCRYPTED_EXTERNAL and self.crypto_params is not None:
            raise ValueError(f"argument '{self.name}': only external arguments may carry crypto_params")

    @property
    def encrypted(self) -> bool:
        return self.role is not ArgRole.CLEAR

    @property
    def external(self) -> bool:
        return self.role is ArgRole.ENCRYPTED_EXTERNAL

    @property
    def encoding(self) -> Encoding:
        return Encoding(self.bit_width, self.signed)


@dataclass(frozen=True, eq=False)
class CircuitHandle:
    """Opaque compiled circuit; only the Evaluation Engine interprets the blob."""

    function: str
    blob: bytes = field(repr=False)
    sha256: str = ""

    def __post_init__(self):
        digest = hashlib.sha256(self.blob).hexdigest()
        if not self.sha256:
            object.__setattr__(self, "sha256", digest)
        elif self.sha256 != digest:
            raise ValueError(f"circuit '{self.function}': checksum mismatch")

    @property
    def length(self) -> int:
        return len(self.blob)


@dataclass(frozen=True, eq=False)
class FunctionSpec:
    """Typed signature of one exposed function."""

    name: str
    inputs: Tuple[ArgSpec, ...]
    outputs: Tuple[ArgSpec, ...]
    circuit_handle: CircuitHandle
    circuit_params: CryptoParams

    def __post_init__(self):
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        if not self.outputs:
            raise ValueError(f"function '{self.name}' declares no outputs")
        if not any(arg.encrypted for arg in self.inputs):
            raise ValueError(f"function '{self.name}' needs at least one encrypted input")
        for arg in self.outputs:
            if arg.role is ArgRole.CLEAR:
                raise ValueError(f"function '{self.name}': output '{arg.name}' cannot be clear")

    def params_for(self, arg: ArgSpec) -> Optional[CryptoParams]:
        """Parameter set an argument's ciphertexts are tagged with at the client boundary."""
        if arg.role is ArgRole.CLEAR:
            return None
        if arg.role is ArgRole.ENCRYPTED_EXTERNAL:
            return arg.crypto_params
        return self.circuit_params

    def referenced_params(self) -> List[CryptoParams]:
        seen: List[CryptoParams] = [self.circuit_params]
        for arg in self.inputs + self.outputs:
            if arg.external and arg.crypto_params not in seen:
                seen.append(arg.crypto_params)
        return seen

    def bridge_pairs(self) -> List[Tuple[CryptoParams, CryptoParams]]:
        """(from, to) conversions this function needs: external inputs in, external outputs out."""
        pairs: List[Tuple[CryptoParams, CryptoParams]] = []
        for arg in self.inputs:
            if arg.external and arg.crypto_params != self.circuit_params:
                pair = (arg.crypto_params, self.circuit_params)
                if pair not in pairs:
                    pairs.append(pair)
        for arg in self.outputs:
            if arg.external and arg.crypto_params != self.circuit_params:
                pair = (self.circuit_params, arg.crypto_params)
                if pair not in pairs:
                    pairs.append(pair)
        return pairs

    def signature(self) -> str:
        def render(arg: ArgSpec) -> str:
            kind = f"{'i' if arg.signed else 'u'}{arg.bit_width}"
            return f"{arg.name}: {kind}<{arg.role.value}>"

        ins = ", ".join(render(a) for a in self.inputs)
        outs = ", ".join(render(a) for a in self.outputs)
        return f"{self.name}({ins}) -> ({outs})"


@dataclass(frozen=True, eq=False)
class ModuleDescriptor:
    """
    A loaded module: ordered functions and the ordered set of distinct
    parameter sets they reference. Every function's parameter sets are in
    `params`, and `params` holds nothing else.
    """

    format_version: int
    functions: Tuple[FunctionSpec, ...]
    params: Tuple[CryptoParams, ...] = ()
    required_features: FrozenSet[str] = frozenset()
    producer: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        functions = tuple(self.functions)
        index: Dict[str, FunctionSpec] = {}
        for fn in functions:
            if fn.name in index:
                raise ValueError(f"duplicate function name '{fn.name}'")
            index[fn.name] = fn

        referenced: List[CryptoParams] = []
        for fn in functions:
            for p in fn.referenced_params():
                if p not in referenced:
                    referenced.append(p)
        declared = tuple(self.params) if self.params else tuple(referenced)
        if set(declared) != set(referenced) or len(set(declared)) != len(declared):
            raise ValueError("descriptor params must be exactly the distinct parameter sets its functions reference")

        object.__setattr__(self, "functions", functions)
        object.__setattr__(self, "params", declared)
        object.__setattr__(self, "required_features", frozenset(self.required_features))
        object.__setattr__(self, "producer", MappingProxyType(dict(self.producer)))
        object.__setattr__(self, "_index", MappingProxyType(index))
        object.__setattr__(self, "_params_index", MappingProxyType({p.params_id: p for p in declared}))

    @property
    def function_names(self) -> List[str]:
        return [fn.name for fn in self.functions]

    def function(self, name: str) -> FunctionSpec:
        try:
            return self._index[name]
        except KeyError:
            raise UnknownFunction(name, available=self.function_names) from None

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[FunctionSpec]:
        return iter(self.functions)

    def __len__(self) -> int:
        return len(self.functions)

    def params_by_id(self, params_id: str) -> CryptoParams:
        return self._params_index[params_id]

    @property
    def internal_params(self) -> List[CryptoParams]:
        """Parameter sets some circuit is evaluated under."""
        out: List[CryptoParams] = []
        for fn in self.functions:
            if fn.circuit_params not in out:
                out.append(fn.circuit_params)
        return out

    @property
    def external_params(self) -> List[CryptoParams]:
        """Parameter sets only ever seen on external arguments."""
        internal = self.internal_params
        return [p for p in self.params if p not in internal]

    def bridge_pairs(self) -> List[Tuple[CryptoParams, CryptoParams]]:
        pairs: List[Tuple[CryptoParams, CryptoParams]] = []
        for fn in self.functions:
            for pair in fn.bridge_pairs():
                if pair not in pairs:
                    pairs.append(pair)
        return pairs
