"""
Keyset Manager.

Builds the (ClientKeyset, ServerKeyset) pair for a loaded module.

For every parameter set in the descriptor the manager either accepts a
caller-supplied secret key (bring-your-own-key, for externally encrypted
arguments) or generates fresh secret material from the Secret CSPRNG. It
then derives, with randomness from the Encryption CSPRNG:
    - per internal parameter set: the bootstrap key and the keyswitch key
    - per (external -> internal) input and (internal -> external) output
      pair: the bridge key used by the ciphertext bridge

Draw order is fixed by the descriptor, so the same bindings and seeds
reproduce bit-identical keysets.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..errors import KeyBindingMismatch, MissingKeyBinding
from ..lwe.core import KeyStorageChoice, KeySwitchKey
from ..lwe.csprng import CSPRNG, EncryptionCSPRNG, SecretCSPRNG
from ..module.descriptor import ModuleDescriptor
from ..utils.config import get_settings
from .keysets import (
    ArgEncodings,
    ClientKeyset,
    EvaluationKeys,
    ExternalSecretKey,
    KeyBinding,
    SecretKeyMaterial,
    ServerKeyset,
)

logger = logging.getLogger(__name__)

BindingsArg = Union[
    Mapping[Tuple[str, int], ExternalSecretKey],
    Iterable[KeyBinding],
    None,
]


def _normalize_bindings(key_bindings: BindingsArg) -> List[KeyBinding]:
    if key_bindings is None:
        return []
    if isinstance(key_bindings, Mapping):
        return [KeyBinding(function=fn, index=idx, key=key) for (fn, idx), key in key_bindings.items()]
    return list(key_bindings)


class KeysetManager:
    """
    Generates or binds secret material and derives evaluation/bridge keys.

    Args:
        secret_rng: Generator for secret keys
        encryption_rng: Generator for encryption masks and noise; must be a
            different instance with a different stream
        allow_external_keygen: Generate keys for external arguments that have
            no binding instead of failing (default from settings)
    """

    def __init__(
        self,
        secret_rng: SecretCSPRNG,
        encryption_rng: EncryptionCSPRNG,
        allow_external_keygen: Optional[bool] = None,
    ):
        if not isinstance(secret_rng, CSPRNG) or not isinstance(encryption_rng, CSPRNG):
            raise TypeError("secret_rng and encryption_rng must be CSPRNG instances")
        if secret_rng is encryption_rng or secret_rng.stream_id == encryption_rng.stream_id:
            raise ValueError("Secret and encryption CSPRNGs must not share state")
        if secret_rng.deterministic != encryption_rng.deterministic:
            logger.warning("Mixing seeded and entropy-seeded CSPRNGs; keysets will not be reproducible")

        self._secret_rng = secret_rng
        self._encryption_rng = encryption_rng
        if allow_external_keygen is None:
            allow_external_keygen = get_settings().ALLOW_EXTERNAL_KEYGEN
        self.allow_external_keygen = allow_external_keygen

    def build(
        self,
        descriptor: ModuleDescriptor,
        key_bindings: BindingsArg = None,
    ) -> Tuple[ClientKeyset, ServerKeyset]:
        """
        Build the keyset pair for a module.

        Args:
            descriptor: Loaded module
            key_bindings: Mapping (function, input index) -> ExternalSecretKey,
                or an iterable of KeyBinding (which can also target outputs)

        Returns:
            (ClientKeyset, ServerKeyset)

        Raises:
            MissingKeyBinding: External argument without a key and keygen disallowed
            KeyBindingMismatch: Binding targets a non-external argument, carries a
                different parameter set, or conflicts with another binding
        """
        bound = self._validate_bindings(descriptor, _normalize_bindings(key_bindings))
        self._check_coverage(descriptor, bound)

        client_keyset = self._build_client_keyset(descriptor, bound)
        server_keyset = self.derive_server_keyset(descriptor, client_keyset)

        logger.info(
            "Built keysets: params=%d bound=%d bridges=%d client=%s",
            len(descriptor.params),
            len(bound),
            len(server_keyset.bridge_pairs),
            client_keyset.fingerprint()[:23],
        )
        return client_keyset, server_keyset

    def derive_server_keyset(self, descriptor: ModuleDescriptor, client_keyset: ClientKeyset) -> ServerKeyset:
        """Derive the public evaluation and bridge keys from client secrets."""
        rng = self._encryption_rng
        evaluation_keys: Dict[str, EvaluationKeys] = {}
        for params in descriptor.internal_params:
            material = client_keyset.material(params)
            if not material.complete:
                raise ValueError("Internal parameter set requires both LWE and GLWE keys")
            bootstrap_key = KeySwitchKey.generate(
                material.lwe_key,
                material.glwe_key,
                params.pbs_base_log,
                params.pbs_level,
                params.glwe_noise,
                rng,
                params.params_id,
                params.params_id,
            )
            keyswitch_key = KeySwitchKey.generate(
                material.glwe_key,
                material.lwe_key,
                params.ks_base_log,
                params.ks_level,
                params.lwe_noise,
                rng,
                params.params_id,
                params.params_id,
            )
            evaluation_keys[params.params_id] = EvaluationKeys(
                params=params, bootstrap_key=bootstrap_key, keyswitch_key=keyswitch_key
            )
            logger.debug("Derived evaluation keys for %s", params.params_id[:19])

        bridge_keys = {}
        for src, dst in descriptor.bridge_pairs():
            src_material = client_keyset.material(src)
            dst_material = client_keyset.material(dst)
            bridge_keys[(src.params_id, dst.params_id)] = KeySwitchKey.generate(
                src_material.encryption_key,
                dst_material.encryption_key,
                dst.ks_base_log,
                dst.ks_level,
                dst.encryption_noise,
                rng,
                src.params_id,
                dst.params_id,
            )
            logger.debug("Derived bridge key %s -> %s", src.params_id[:19], dst.params_id[:19])

        return ServerKeyset(evaluation_keys, bridge_keys)

    def _validate_bindings(
        self,
        descriptor: ModuleDescriptor,
        bindings: List[KeyBinding],
    ) -> Dict[str, ExternalSecretKey]:
        bound: Dict[str, ExternalSecretKey] = {}
        for binding in bindings:
            if binding.function not in descriptor:
                raise KeyBindingMismatch(binding.function, binding.index, "unknown function")
            spec = descriptor.function(binding.function)
            args = spec.outputs if binding.output else spec.inputs
            if not 0 <= binding.index < len(args):
                raise KeyBindingMismatch(binding.function, binding.index, "argument index out of range")
            arg = args[binding.index]
            if not arg.external:
                raise KeyBindingMismatch(binding.function, binding.index, f"argument '{arg.name}' is not external")
            if not isinstance(binding.key, ExternalSecretKey):
                raise KeyBindingMismatch(binding.function, binding.index, "key must be an ExternalSecretKey")
            if binding.key.params != arg.crypto_params:
                raise KeyBindingMismatch(
                    binding.function, binding.index, "key is tagged with a different parameter set"
                )
            params_id = arg.crypto_params.params_id
            previous = bound.get(params_id)
            if previous is not None and not previous.same_key(binding.key):
                raise KeyBindingMismatch(
                    binding.function, binding.index, "conflicting keys bound for the same parameter set"
                )
            bound[params_id] = binding.key
        return bound

    def _check_coverage(self, descriptor: ModuleDescriptor, bound: Dict[str, ExternalSecretKey]) -> None:
        if self.allow_external_keygen:
            return
        for spec in descriptor:
            for arg in spec.inputs + spec.outputs:
                if arg.external and arg.crypto_params.params_id not in bound:
                    raise MissingKeyBinding(spec.name, arg.name, arg.crypto_params.params_id)

    def _build_client_keyset(
        self,
        descriptor: ModuleDescriptor,
        bound: Dict[str, ExternalSecretKey],
    ) -> ClientKeyset:
        rng = self._secret_rng
        internal = descriptor.internal_params
        materials: Dict[str, SecretKeyMaterial] = {}
        for params in descriptor.params:
            external_key = bound.get(params.params_id)
            if external_key is None:
                materials[params.params_id] = SecretKeyMaterial(
                    params=params,
                    lwe_key=rng.binary(params.lwe_dimension),
                    glwe_key=rng.binary(params.glwe_key_dimension),
                )
                continue

            # The bound key is the encryption key; an internal set also needs its counterpart.
            if params.key_storage_choice is KeyStorageChoice.BIG:
                lwe_key = rng.binary(params.lwe_dimension) if params in internal else None
                glwe_key = external_key.key
            else:
                lwe_key = external_key.key
                glwe_key = rng.binary(params.glwe_key_dimension) if params in internal else None
            materials[params.params_id] = SecretKeyMaterial(
                params=params, lwe_key=lwe_key, glwe_key=glwe_key, bound=True
            )
            logger.info("Bound external key %s", external_key.get_fingerprint())

        encodings: Dict[str, ArgEncodings] = {
            spec.name: (
                tuple(arg.encoding for arg in spec.inputs),
                tuple(arg.encoding for arg in spec.outputs),
            )
            for spec in descriptor
        }
        return ClientKeyset(materials, encodings)
