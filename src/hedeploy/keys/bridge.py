"""
Ciphertext Bridge.

Moves a ciphertext from one parameter set to another by key-switching with
a bridge key derived by the KeysetManager, without decrypting. This lets a
circuit compiled for the internal parameter set consume ciphertexts made
under an externally chosen parameter set, and lets an external-scheme
client consume the circuit's results.

The bridge only key-switches. Whether a conversion also needs a noise
refresh is left to the Evaluation Engine, which owns the bootstrap keys.
"""

import logging
import threading
from typing import Dict, Iterable, Tuple

from ..errors import TypeMismatch
from ..lwe.core import Ciphertext, CryptoParams
from .keysets import ServerKeyset

logger = logging.getLogger(__name__)


class CiphertextBridge:
    """
    Converts ciphertexts between parameter sets.

    Stateless apart from lock-guarded conversion counters, so one bridge can
    be shared between concurrent server stubs.
    """

    def __init__(self):
        self._stats: Dict[str, int] = {"conversions": 0, "identity": 0}
        self._lock = threading.Lock()

    @property
    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def validate(
        self,
        pairs: Iterable[Tuple[CryptoParams, CryptoParams]],
        server_keyset: ServerKeyset,
    ) -> None:
        """
        Check that every (from, to) pair has a bridge key.

        Call at configuration time so a missing key surfaces before the
        first evaluation.

        Raises:
            NoBridgeKey: First pair without a key
        """
        for src, dst in pairs:
            if src != dst:
                server_keyset.bridge_key(src.params_id, dst.params_id)

    def convert(
        self,
        ciphertext: Ciphertext,
        from_params: CryptoParams,
        to_params: CryptoParams,
        server_keyset: ServerKeyset,
    ) -> Ciphertext:
        """
        Key-switch a ciphertext from `from_params` to `to_params`.

        Returns a new ciphertext tagged with `to_params`; the input is left
        untouched.

        Raises:
            TypeMismatch: Ciphertext is not tagged with `from_params`
            NoBridgeKey: No bridge key for the pair
        """
        if ciphertext.params_id != from_params.params_id:
            raise TypeMismatch("ciphertext tag does not match the bridge source parameter set")
        if from_params == to_params:
            with self._lock:
                self._stats["identity"] += 1
            return ciphertext

        key = server_keyset.bridge_key(from_params.params_id, to_params.params_id)
        if ciphertext.dimension != key.input_dimension:
            raise TypeMismatch(
                f"ciphertext dimension {ciphertext.dimension} does not match bridge input {key.input_dimension}"
            )
        body = key.apply(ciphertext.body)
        with self._lock:
            self._stats["conversions"] += 1
        logger.debug(
            "Bridged ciphertext %s -> %s (n=%d -> n=%d)",
            from_params.params_id[:19],
            to_params.params_id[:19],
            key.input_dimension,
            key.output_dimension,
        )
        return Ciphertext(params_id=to_params.params_id, body=body)


_default_bridge = CiphertextBridge()


def convert(
    ciphertext: Ciphertext,
    from_params: CryptoParams,
    to_params: CryptoParams,
    server_keyset: ServerKeyset,
) -> Ciphertext:
    """Convert with the module-level bridge instance."""
    return _default_bridge.convert(ciphertext, from_params, to_params, server_keyset)
