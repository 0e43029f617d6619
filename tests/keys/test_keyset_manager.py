"""
Tests for keyset construction, bring-your-own-key bindings and keyset
serialization.
"""

import numpy as np
import pytest
from cryptography.exceptions import InvalidTag

from hedeploy.artifact import load
from hedeploy.errors import KeyBindingMismatch, KeyNotFound, MissingKeyBinding
from hedeploy.keys.keysets import ClientKeyset, ExternalSecretKey, KeyBinding, ServerKeyset
from hedeploy.keys.manager import KeysetManager
from hedeploy.lwe.core import Encoding
from hedeploy.lwe.csprng import EncryptionCSPRNG, SecretCSPRNG


@pytest.fixture
def inc_descriptor(inc_artifact):
    return load(inc_artifact)


@pytest.fixture
def my_func_descriptor(my_func_artifact):
    return load(my_func_artifact)


@pytest.fixture
def external_key(external_params):
    return ExternalSecretKey.generate(external_params, SecretCSPRNG.from_seed(99))


class TestKeysetManagerConstruction:
    """Tests for CSPRNG separation."""

    def test_same_generator_rejected(self):
        rng = SecretCSPRNG.from_seed(1)
        with pytest.raises(ValueError):
            KeysetManager(rng, rng)

    def test_shared_stream_rejected(self):
        with pytest.raises(ValueError):
            KeysetManager(SecretCSPRNG.from_seed(1), SecretCSPRNG.from_seed(1))

    def test_non_generator_rejected(self):
        with pytest.raises(TypeError):
            KeysetManager(np.random.default_rng(), EncryptionCSPRNG.from_seed(1))


class TestKeysetBuild:
    """Tests for keyset derivation."""

    def test_internal_only(self, inc_descriptor, internal_params, secret_rng, encryption_rng):
        client, server = KeysetManager(secret_rng, encryption_rng).build(inc_descriptor)
        assert internal_params in client
        assert server.has_evaluation_keys(internal_params.params_id)
        assert server.bridge_pairs == ()
        material = client.material(internal_params)
        assert material.complete
        assert not material.bound

        keys = server.evaluation_keys(internal_params.params_id)
        assert keys.bootstrap_key.input_dimension == internal_params.lwe_dimension
        assert keys.bootstrap_key.output_dimension == internal_params.glwe_key_dimension
        assert keys.bootstrap_key.level == internal_params.pbs_level
        assert keys.keyswitch_key.input_dimension == internal_params.glwe_key_dimension
        assert keys.keyswitch_key.output_dimension == internal_params.lwe_dimension

    def test_encoding_tables(self, inc_descriptor, secret_rng, encryption_rng):
        client, _ = KeysetManager(secret_rng, encryption_rng).build(inc_descriptor)
        assert client.encodings["inc"] == ((Encoding(8),), (Encoding(8),))

    def test_binding_by_mapping(
        self, my_func_descriptor, external_params, internal_params, external_key, secret_rng, encryption_rng
    ):
        client, server = KeysetManager(secret_rng, encryption_rng).build(
            my_func_descriptor, {("my_func", 0): external_key, ("my_func", 1): external_key}
        )
        material = client.material(external_params)
        assert material.bound
        assert np.array_equal(material.encryption_key, external_key.key)
        assert material.lwe_key is None
        assert server.has_bridge_key(external_params.params_id, internal_params.params_id)
        assert not server.has_evaluation_keys(external_params.params_id)

    def test_binding_covers_shared_params(self, my_func_descriptor, external_key, secret_rng, encryption_rng):
        """One binding supplies the key for every argument with the same params."""
        client, _ = KeysetManager(secret_rng, encryption_rng).build(
            my_func_descriptor, [KeyBinding("my_func", 1, external_key)]
        )
        assert client.material(external_key.params).bound

    def test_missing_binding(self, my_func_descriptor, secret_rng, encryption_rng):
        manager = KeysetManager(secret_rng, encryption_rng, allow_external_keygen=False)
        with pytest.raises(MissingKeyBinding) as exc:
            manager.build(my_func_descriptor)
        assert exc.value.details["function"] == "my_func"

    def test_external_keygen_policy(self, my_func_descriptor, external_params, secret_rng, encryption_rng):
        manager = KeysetManager(secret_rng, encryption_rng, allow_external_keygen=True)
        client, _ = manager.build(my_func_descriptor)
        assert external_params in client
        assert not client.material(external_params).bound

    def test_binding_to_internal_argument(self, inc_descriptor, internal_params, secret_rng, encryption_rng):
        key = ExternalSecretKey.generate(internal_params, SecretCSPRNG.from_seed(5))
        with pytest.raises(KeyBindingMismatch):
            KeysetManager(secret_rng, encryption_rng).build(inc_descriptor, {("inc", 0): key})

    def test_binding_out_of_range(self, my_func_descriptor, external_key, secret_rng, encryption_rng):
        with pytest.raises(KeyBindingMismatch):
            KeysetManager(secret_rng, encryption_rng).build(my_func_descriptor, {("my_func", 2): external_key})

    def test_binding_unknown_function(self, my_func_descriptor, external_key, secret_rng, encryption_rng):
        with pytest.raises(KeyBindingMismatch):
            KeysetManager(secret_rng, encryption_rng).build(my_func_descriptor, {("nope", 0): external_key})

    def test_binding_wrong_params(self, my_func_descriptor, internal_params, secret_rng, encryption_rng):
        key = ExternalSecretKey.generate(internal_params, SecretCSPRNG.from_seed(5))
        with pytest.raises(KeyBindingMismatch):
            KeysetManager(secret_rng, encryption_rng).build(my_func_descriptor, {("my_func", 0): key})

    def test_conflicting_bindings(self, my_func_descriptor, external_params, external_key, secret_rng, encryption_rng):
        other = ExternalSecretKey.generate(external_params, SecretCSPRNG.from_seed(100))
        with pytest.raises(KeyBindingMismatch):
            KeysetManager(secret_rng, encryption_rng).build(
                my_func_descriptor, {("my_func", 0): external_key, ("my_func", 1): other}
            )

    def test_wrong_key_length(self, external_params):
        with pytest.raises(ValueError):
            ExternalSecretKey(external_params, np.zeros(7, dtype=np.uint64))

    def test_non_binary_key(self, external_params):
        with pytest.raises(ValueError):
            ExternalSecretKey(external_params, np.full(external_params.encryption_key_dimension, 2, dtype=np.uint64))

    def test_deterministic(self, my_func_descriptor, external_key):
        def build():
            manager = KeysetManager(SecretCSPRNG.from_seed(10), EncryptionCSPRNG.from_seed(20))
            return manager.build(my_func_descriptor, {("my_func", 0): external_key})

        client_a, server_a = build()
        client_b, server_b = build()
        assert client_a.fingerprint() == client_b.fingerprint()
        assert server_a.to_bytes() == server_b.to_bytes()

    def test_different_seeds_differ(self, inc_descriptor):
        a, _ = KeysetManager(SecretCSPRNG.from_seed(1), EncryptionCSPRNG.from_seed(2)).build(inc_descriptor)
        b, _ = KeysetManager(SecretCSPRNG.from_seed(3), EncryptionCSPRNG.from_seed(2)).build(inc_descriptor)
        assert a.fingerprint() != b.fingerprint()

    def test_derive_server_keyset_requires_full_material(
        self, my_func_descriptor, external_key, internal_params, secret_rng, encryption_rng
    ):
        manager = KeysetManager(secret_rng, encryption_rng)
        with pytest.raises(KeyNotFound):
            manager.derive_server_keyset(my_func_descriptor, ClientKeyset({}))


class TestServerKeyset:
    """Tests for the public keyset."""

    @pytest.fixture
    def keysets(self, my_func_descriptor, external_key, secret_rng, encryption_rng):
        return KeysetManager(secret_rng, encryption_rng).build(
            my_func_descriptor, {("my_func", 0): external_key}
        )

    def test_roundtrip(self, keysets):
        _, server = keysets
        data = server.to_bytes()
        restored = ServerKeyset.from_bytes(data)
        assert restored.to_bytes() == data
        assert restored.fingerprint() == server.fingerprint()
        assert restored.bridge_pairs == server.bridge_pairs

    def test_no_secret_material(self, keysets, external_key):
        """Serialized server keys contain none of the secret keys."""
        client, server = keysets
        data = server.to_bytes()
        for params in client.params:
            material = client.material(params)
            for key in (material.lwe_key, material.glwe_key):
                if key is None:
                    continue
                assert key.astype(np.uint8).tobytes() not in data
                assert key.astype("<u8").tobytes() not in data
        assert external_key.key.astype("<u8").tobytes() not in data

    def test_bad_magic(self):
        with pytest.raises(ValueError):
            ServerKeyset.from_bytes(b"XXXX\x01")

    def test_read_only(self, keysets, internal_params):
        _, server = keysets
        matrix = server.evaluation_keys(internal_params.params_id).keyswitch_key.matrix
        assert not matrix.flags.writeable


class TestClientKeysetExport:
    """Tests for wrapped client keyset persistence."""

    @pytest.fixture
    def client(self, inc_descriptor, secret_rng, encryption_rng):
        client, _ = KeysetManager(secret_rng, encryption_rng).build(inc_descriptor)
        return client

    def test_export_import(self, client):
        master_key = bytes(range(32))
        restored = ClientKeyset.import_wrapped(client.export(master_key), master_key)
        assert restored.fingerprint() == client.fingerprint()
        assert restored.encodings == client.encodings

    def test_export_wraps_secrets(self, client, internal_params):
        exported = client.export(bytes(32))
        material = client.material(internal_params)
        assert b'"lwe_key": null' not in exported
        assert material.lwe_key.astype(np.uint8).tobytes() not in exported

    def test_wrong_master_key(self, client):
        data = client.export(bytes(32))
        with pytest.raises(InvalidTag):
            ClientKeyset.import_wrapped(data, b"\x01" * 32)

    def test_master_key_length(self, client):
        with pytest.raises(ValueError):
            client.export(b"short")
