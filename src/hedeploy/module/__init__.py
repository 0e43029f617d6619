"""
Module descriptor, call frames, evaluation engines and stubs.
"""

from .descriptor import ArgRole, ArgSpec, CircuitHandle, FunctionSpec, ModuleDescriptor
from .engine import EvaluationEngine, LinearCircuitEngine, compile_linear_circuit
from .frames import CallFrame
from .stubs import ClientModule, ClientStub, ServerModule, ServerStub, build_stubs

__all__ = [
    "ArgRole",
    "ArgSpec",
    "CircuitHandle",
    "FunctionSpec",
    "ModuleDescriptor",
    "CallFrame",
    "EvaluationEngine",
    "LinearCircuitEngine",
    "compile_linear_circuit",
    "ClientStub",
    "ServerStub",
    "ClientModule",
    "ServerModule",
    "build_stubs",
]
