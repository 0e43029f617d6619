"""
Tests for the ciphertext bridge.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from hedeploy.artifact import ArtifactBuilder, load
from hedeploy.errors import NoBridgeKey, TypeMismatch
from hedeploy.keys import bridge as bridge_module
from hedeploy.keys.bridge import CiphertextBridge
from hedeploy.keys.keysets import ExternalSecretKey, KeyBinding, ServerKeyset
from hedeploy.keys.manager import KeysetManager
from hedeploy.lwe.core import Encoding
from hedeploy.lwe.csprng import EncryptionCSPRNG, SecretCSPRNG
from hedeploy.module import ArgRole, ArgSpec, compile_linear_circuit


class TestCiphertextBridge:
    """Tests for key-switching between parameter sets."""

    @pytest.fixture
    def external_key(self, external_params):
        return ExternalSecretKey.generate(external_params, SecretCSPRNG.from_seed(99))

    @pytest.fixture
    def keysets(self, my_func_artifact, external_key, secret_rng, encryption_rng):
        descriptor = load(my_func_artifact)
        return KeysetManager(secret_rng, encryption_rng).build(descriptor, {("my_func", 0): external_key})

    @pytest.fixture
    def bridge(self):
        return CiphertextBridge()

    @pytest.mark.parametrize("value", [0, 1, 6, 127, 255])
    def test_convert_preserves_value(
        self, bridge, keysets, external_key, external_params, internal_params, client_rng, value
    ):
        client, server = keysets
        ct = external_key.encrypt(value, 8, client_rng)
        converted = bridge.convert(ct, external_params, internal_params, server)
        assert converted.params_id == internal_params.params_id
        assert converted.dimension == internal_params.encryption_key_dimension
        assert Encoding(8).decode(client.phase(internal_params, converted)) == value

    def test_signed_values(self, bridge, keysets, external_key, external_params, internal_params, client_rng):
        client, server = keysets
        ct = external_key.encrypt(-5, 8, client_rng, signed=True)
        converted = bridge.convert(ct, external_params, internal_params, server)
        assert Encoding(8, signed=True).decode(client.phase(internal_params, converted)) == -5

    def test_input_not_mutated(self, bridge, keysets, external_key, external_params, internal_params, client_rng):
        _, server = keysets
        ct = external_key.encrypt(3, 8, client_rng)
        before = ct.body.copy()
        bridge.convert(ct, external_params, internal_params, server)
        assert (ct.body == before).all()
        assert ct.params_id == external_params.params_id

    def test_identity(self, bridge, keysets, internal_params, client_rng):
        client, server = keysets
        ct = client.encrypt(internal_params, 0, client_rng)
        assert bridge.convert(ct, internal_params, internal_params, server) is ct
        assert bridge.stats["identity"] == 1

    def test_wrong_tag(self, bridge, keysets, external_params, internal_params, client_rng):
        client, server = keysets
        ct = client.encrypt(internal_params, 0, client_rng)
        with pytest.raises(TypeMismatch):
            bridge.convert(ct, external_params, internal_params, server)

    def test_missing_pair(self, bridge, keysets, external_params, internal_params, client_rng):
        """Outputs are internal, so no internal -> external key was derived."""
        client, server = keysets
        ct = client.encrypt(internal_params, 0, client_rng)
        with pytest.raises(NoBridgeKey):
            bridge.convert(ct, internal_params, external_params, server)

    def test_validate(self, bridge, keysets, external_params, internal_params):
        _, server = keysets
        bridge.validate([(external_params, internal_params), (internal_params, internal_params)], server)
        with pytest.raises(NoBridgeKey):
            bridge.validate([(internal_params, external_params)], server)
        with pytest.raises(NoBridgeKey):
            bridge.validate([(external_params, internal_params)], ServerKeyset({}, {}))

    def test_module_level_convert(self, keysets, external_key, external_params, internal_params, client_rng):
        client, server = keysets
        ct = external_key.encrypt(9, 8, client_rng)
        converted = bridge_module.convert(ct, external_params, internal_params, server)
        assert Encoding(8).decode(client.phase(internal_params, converted)) == 9

    def test_shared_between_threads(
        self, bridge, keysets, external_key, external_params, internal_params, client_rng
    ):
        client, server = keysets
        cts = [external_key.encrypt(i, 8, client_rng) for i in range(32)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            converted = list(pool.map(lambda ct: bridge.convert(ct, external_params, internal_params, server), cts))
        assert [Encoding(8).decode(client.phase(internal_params, ct)) for ct in converted] == list(range(32))
        assert bridge.stats["conversions"] == 32

    def test_external_output_roundtrip(self, bridge, external_key, external_params, internal_params, client_rng):
        """Convert in and back out through a keyset that has both directions."""
        builder = ArtifactBuilder(required_features=["lwe-linear"])
        builder.add_function(
            "echo",
            inputs=[ArgSpec("x", 8, role=ArgRole.ENCRYPTED_EXTERNAL, crypto_params=external_params)],
            outputs=[ArgSpec("y", 8, role=ArgRole.ENCRYPTED_EXTERNAL, crypto_params=external_params)],
            circuit=compile_linear_circuit(1, [], [0]),
            circuit_params=internal_params,
        )
        descriptor = load(builder.to_bytes())
        manager = KeysetManager(SecretCSPRNG.from_seed(4), EncryptionCSPRNG.from_seed(5))
        _, server = manager.build(
            descriptor, [KeyBinding("echo", 0, external_key), KeyBinding("echo", 0, external_key, output=True)]
        )

        ct = external_key.encrypt(77, 8, client_rng)
        inside = bridge.convert(ct, external_params, internal_params, server)
        outside = bridge.convert(inside, internal_params, external_params, server)
        assert outside.params_id == external_params.params_id
        assert external_key.decrypt(outside, 8) == 77
        assert bridge.stats["conversions"] == 2
