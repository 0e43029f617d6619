"""
Pytest configuration and fixtures.

This file ensures proper path setup for imports and provides small
parameter sets, seeded generators and prebuilt artifacts shared across the
test suite.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from hedeploy.artifact import ArtifactBuilder  # noqa: E402
from hedeploy.lwe import CryptoParams, EncryptionCSPRNG, SecretCSPRNG  # noqa: E402
from hedeploy.module import ArgRole, ArgSpec, LinearCircuitEngine, compile_linear_circuit  # noqa: E402


@pytest.fixture
def internal_params():
    """Parameter set circuits are compiled for (fast, insecure)."""
    return CryptoParams.testing()


@pytest.fixture
def external_params():
    """A different parameter set chosen by an external producer."""
    return CryptoParams.testing(lwe_dimension=32, polynomial_size=128)


@pytest.fixture
def secret_rng():
    return SecretCSPRNG.from_seed(1)


@pytest.fixture
def encryption_rng():
    return EncryptionCSPRNG.from_seed(2)


@pytest.fixture
def client_rng():
    """Encryption randomness for the client side of a call."""
    return EncryptionCSPRNG.from_seed(3)


@pytest.fixture
def engine():
    return LinearCircuitEngine()


@pytest.fixture
def inc_artifact(internal_params):
    """inc(x: u8) -> x + 1, all internal."""
    builder = ArtifactBuilder(required_features=["lwe-linear"])
    builder.add_function(
        "inc",
        inputs=[ArgSpec("x", 8)],
        outputs=[ArgSpec("y", 8)],
        circuit=compile_linear_circuit(
            1, [{"op": "add_const", "args": [0], "value": 1, "bit_width": 8}], [1]
        ),
        circuit_params=internal_params,
    )
    return builder.to_bytes()


@pytest.fixture
def my_func_artifact(internal_params, external_params):
    """my_func(x, y) -> x + y with both inputs encrypted externally."""
    builder = ArtifactBuilder(required_features=["lwe-linear"])
    builder.add_function(
        "my_func",
        inputs=[
            ArgSpec("x", 8, role=ArgRole.ENCRYPTED_EXTERNAL, crypto_params=external_params),
            ArgSpec("y", 8, role=ArgRole.ENCRYPTED_EXTERNAL, crypto_params=external_params),
        ],
        outputs=[ArgSpec("z", 8)],
        circuit=compile_linear_circuit(2, [{"op": "add", "args": [0, 1]}], [2]),
        circuit_params=internal_params,
    )
    return builder.to_bytes()
