"""
Evaluation Engine interface and the reference linear engine.

The engine is the collaborator that actually executes a compiled circuit on
ciphertexts. The deployment layer only hands it an opaque CircuitHandle, the
ServerKeyset and the input values (already bridged to the circuit's
parameter set) and expects the output values back.

LinearCircuitEngine runs leveled linear programs over LWE ciphertexts. A
program is canonical JSON:

    {
      "engine": "lwe-linear",
      "version": 1,
      "inputs": 2,
      "ops": [{"op": "add", "args": [0, 1]},
              {"op": "add_const", "args": [2], "value": 1, "bit_width": 8}],
      "outputs": [3]
    }

Slots 0..inputs-1 hold the call's values; each op appends one slot. Linear
operations need no bootstrapping, so the engine only checks that evaluation
keys exist for the parameter set it runs under.
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from numbers import Integral
from typing import Any, Dict, FrozenSet, List, Sequence

import numpy as np

from ..errors import EvaluationError
from ..keys.keysets import ServerKeyset
from ..lwe.core import TORUS_MODULUS, Ciphertext, Encoding
from .descriptor import CircuitHandle
from .frames import FrameValue

logger = logging.getLogger(__name__)

LINEAR_FEATURE = "lwe-linear"
LINEAR_PROGRAM_VERSION = 1

# op -> (number of slot arguments, extra fields)
_LINEAR_OPS: Dict[str, tuple] = {
    "add": (2, ()),
    "sub": (2, ()),
    "neg": (1, ()),
    "add_const": (1, ("value", "bit_width")),
    "mul_const": (1, ("value",)),
    "add_clear": (2, ("bit_width",)),
    "mul_clear": (2, ()),
}


class EvaluationEngine(ABC):
    """Executes compiled circuits on ciphertexts."""

    @property
    @abstractmethod
    def supported_features(self) -> FrozenSet[str]:
        """Capabilities an artifact may require of this engine."""

    @abstractmethod
    def evaluate(
        self,
        circuit_handle: CircuitHandle,
        server_keyset: ServerKeyset,
        values: Sequence[FrameValue],
    ) -> List[FrameValue]:
        """
        Run one circuit.

        Raises:
            EvaluationError: On any engine-side failure
        """


def compile_linear_circuit(inputs: int, ops: Sequence[Dict[str, Any]], outputs: Sequence[int]) -> bytes:
    """
    Produce a LinearCircuitEngine program blob.

    The result is validated and canonical, so equal programs give equal bytes.

    Raises:
        ValueError: Malformed program
    """
    program = {
        "engine": LINEAR_FEATURE,
        "version": LINEAR_PROGRAM_VERSION,
        "inputs": inputs,
        "ops": [dict(op) for op in ops],
        "outputs": list(outputs),
    }
    _validate_program(program)
    return json.dumps(program, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _is_int(value: Any) -> bool:
    return isinstance(value, Integral) and not isinstance(value, bool)


def _validate_program(program: Any) -> None:
    if not isinstance(program, dict):
        raise ValueError("program must be a JSON object")
    if program.get("engine") != LINEAR_FEATURE:
        raise ValueError(f"program targets engine {program.get('engine')!r}")
    if program.get("version") != LINEAR_PROGRAM_VERSION:
        raise ValueError(f"unsupported program version {program.get('version')!r}")
    inputs = program.get("inputs")
    if not _is_int(inputs) or inputs < 0:
        raise ValueError("inputs must be a non-negative integer")
    ops = program.get("ops")
    if not isinstance(ops, list):
        raise ValueError("ops must be a list")

    slots = inputs
    for position, op in enumerate(ops):
        if not isinstance(op, dict) or op.get("op") not in _LINEAR_OPS:
            raise ValueError(f"op {position}: unknown operation")
        arity, extra = _LINEAR_OPS[op["op"]]
        args = op.get("args")
        if not isinstance(args, list) or len(args) != arity:
            raise ValueError(f"op {position}: '{op['op']}' takes {arity} slot argument(s)")
        for arg in args:
            if not _is_int(arg) or not 0 <= arg < slots:
                raise ValueError(f"op {position}: slot {arg!r} is not defined yet")
        for name in extra:
            if not _is_int(op.get(name)):
                raise ValueError(f"op {position}: '{name}' must be an integer")
        if "bit_width" in extra:
            Encoding(op["bit_width"])
        slots += 1

    outputs = program.get("outputs")
    if not isinstance(outputs, list) or not outputs:
        raise ValueError("outputs must be a non-empty list")
    for slot in outputs:
        if not _is_int(slot) or not 0 <= slot < slots:
            raise ValueError(f"output slot {slot!r} is not defined")


def _add_plain(ct: Ciphertext, plaintext: int) -> Ciphertext:
    body = ct.body.copy()
    body[-1] = (int(body[-1]) + plaintext) % TORUS_MODULUS
    return Ciphertext(params_id=ct.params_id, body=body)


def _scale(ct: Ciphertext, factor: int) -> Ciphertext:
    return Ciphertext(params_id=ct.params_id, body=ct.body * np.uint64(factor % TORUS_MODULUS))


class LinearCircuitEngine(EvaluationEngine):
    """
    Reference engine for leveled linear circuits over LWE.

    Parsed programs are cached by blob checksum; the cache and counters are
    lock-guarded so one engine can serve concurrent stubs. Holds no key
    material.
    """

    def __init__(self):
        self._programs: Dict[str, Dict[str, Any]] = {}
        self._stats = {"evaluations": 0, "ops": 0}
        self._lock = threading.Lock()

    @property
    def supported_features(self) -> FrozenSet[str]:
        return frozenset({LINEAR_FEATURE})

    @property
    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def _program(self, circuit_handle: CircuitHandle) -> Dict[str, Any]:
        with self._lock:
            program = self._programs.get(circuit_handle.sha256)
        if program is None:
            try:
                program = json.loads(circuit_handle.blob.decode("utf-8"))
                _validate_program(program)
            except (UnicodeDecodeError, ValueError) as e:
                raise EvaluationError(f"malformed circuit program: {e}", function=circuit_handle.function) from e
            with self._lock:
                self._programs[circuit_handle.sha256] = program
        return program

    def evaluate(
        self,
        circuit_handle: CircuitHandle,
        server_keyset: ServerKeyset,
        values: Sequence[FrameValue],
    ) -> List[FrameValue]:
        function = circuit_handle.function
        program = self._program(circuit_handle)
        if len(values) != program["inputs"]:
            raise EvaluationError(f"program expects {program['inputs']} inputs, got {len(values)}", function)

        tags = {v.params_id for v in values if isinstance(v, Ciphertext)}
        if len(tags) != 1:
            raise EvaluationError("inputs must be ciphertexts under exactly one parameter set", function)
        (params_id,) = tags
        if not server_keyset.has_evaluation_keys(params_id):
            raise EvaluationError("server keyset has no evaluation keys for the circuit parameters", function)

        slots: List[FrameValue] = list(values)

        def ciphertext(slot: int) -> Ciphertext:
            value = slots[slot]
            if not isinstance(value, Ciphertext):
                raise EvaluationError(f"slot {slot} holds a clear value where a ciphertext is required", function)
            return value

        def clear(slot: int) -> int:
            value = slots[slot]
            if isinstance(value, Ciphertext):
                raise EvaluationError(f"slot {slot} holds a ciphertext where a clear value is required", function)
            return int(value)

        for op in program["ops"]:
            name, args = op["op"], op["args"]
            if name == "add":
                out = Ciphertext(params_id, ciphertext(args[0]).body + ciphertext(args[1]).body)
            elif name == "sub":
                out = Ciphertext(params_id, ciphertext(args[0]).body - ciphertext(args[1]).body)
            elif name == "neg":
                out = _scale(ciphertext(args[0]), -1)
            elif name == "add_const":
                encoding = Encoding(op["bit_width"])
                out = _add_plain(ciphertext(args[0]), (op["value"] % (1 << encoding.bit_width)) * encoding.delta)
            elif name == "mul_const":
                out = _scale(ciphertext(args[0]), op["value"])
            elif name == "add_clear":
                encoding = Encoding(op["bit_width"])
                out = _add_plain(ciphertext(args[0]), (clear(args[1]) % (1 << encoding.bit_width)) * encoding.delta)
            else:  # mul_clear
                out = _scale(ciphertext(args[0]), clear(args[1]))
            slots.append(out)

        with self._lock:
            self._stats["evaluations"] += 1
            self._stats["ops"] += len(program["ops"])
        logger.debug("Evaluated %s: %d ops", function, len(program["ops"]))
        return [slots[slot] for slot in program["outputs"]]
