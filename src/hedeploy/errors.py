"""
hedeploy Unified Error Taxonomy.

Every failure raised by the deployment layer derives from HEDeployError and
carries:
- A machine-readable error code
- Structured details (never key material or plaintexts)
- An optional request ID for tracing

Error Code Naming Convention:
- HD_<COMPONENT>_<SPECIFIC>
- Components: ARTIFACT, KEYS, BRIDGE, STUB, ENGINE, RNG, CONFIG

Configuration-time errors (IncompatibleVersion, CorruptArtifact,
UnsupportedFeature, MissingKeyBinding, KeyBindingMismatch, NoBridgeKey) are
raised while loading, building keysets or constructing stubs. Per-call errors
(ArityMismatch, TypeMismatch, EvaluationError) are raised to the immediate
caller and never retried.

Security:
- NEVER include secrets, keys, seeds or plaintext values in messages
- Parameter sets are referenced by truncated fingerprint only
"""

from typing import Any, Dict, Optional


def _short(params_id: Optional[str]) -> Optional[str]:
    if params_id is None:
        return None
    return params_id[:19] + "..." if len(params_id) > 22 else params_id


class HEDeployError(Exception):
    """Base exception for all hedeploy errors.

    Attributes:
        code: Machine-readable error code (e.g., HD_ARTIFACT_CORRUPT)
        message: Human-readable description
        details: Structured metadata (NEVER include sensitive data)
        request_id: Optional correlation ID for distributed tracing
    """

    def __init__(
        self,
        message: str,
        code: str = "HD_INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.request_id = request_id

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.request_id:
            parts.append(f"(request_id: {self.request_id})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "request_id": self.request_id,
        }


# =============================================================================
# Artifact Loader Errors (HD_ARTIFACT_*)
# =============================================================================


class ArtifactError(HEDeployError):
    """Base class for artifact container errors."""

    pass


class IncompatibleVersion(ArtifactError):
    """Raised when the container format version is outside the supported range."""

    def __init__(
        self,
        found_version: Any,
        min_version: int,
        max_version: int,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=(
                f"Unsupported artifact format_version {found_version!r}; "
                f"this build supports [{min_version}, {max_version}]"
            ),
            code="HD_ARTIFACT_VERSION_UNSUPPORTED",
            details={
                "found_version": found_version,
                "min_version": min_version,
                "max_version": max_version,
            },
            request_id=request_id,
        )


class CorruptArtifact(ArtifactError):
    """Raised when the manifest is unparsable, inconsistent, or a blob is missing/damaged."""

    def __init__(
        self,
        reason: str,
        component: str = "manifest",
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Corrupt artifact ({component}): {reason}",
            code="HD_ARTIFACT_CORRUPT",
            details={"component": component},
            request_id=request_id,
        )


class UnsupportedFeature(ArtifactError):
    """Raised when the manifest requires capabilities the engine lacks."""

    def __init__(
        self,
        features: list,
        supported: list,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Artifact requires unsupported engine features: {', '.join(sorted(features))}",
            code="HD_ARTIFACT_FEATURE_UNSUPPORTED",
            details={"missing": sorted(features), "supported": sorted(supported)},
            request_id=request_id,
        )


# =============================================================================
# Keyset Errors (HD_KEYS_*)
# =============================================================================


class KeysetError(HEDeployError):
    """Base class for keyset errors."""

    pass


class MissingKeyBinding(KeysetError):
    """Raised when an externally encrypted argument has no bound secret key."""

    def __init__(
        self,
        function: str,
        argument: str,
        params_id: str,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=(
                f"No key binding for external argument '{argument}' of function "
                f"'{function}' and external key generation is disabled"
            ),
            code="HD_KEYS_BINDING_MISSING",
            details={"function": function, "argument": argument, "params_id": _short(params_id)},
            request_id=request_id,
        )


class KeyBindingMismatch(KeysetError):
    """Raised when a supplied key binding does not match its target argument."""

    def __init__(
        self,
        function: str,
        index: int,
        reason: str,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Invalid key binding for {function}[{index}]: {reason}",
            code="HD_KEYS_BINDING_MISMATCH",
            details={"function": function, "index": index},
            request_id=request_id,
        )


class KeyNotFound(KeysetError):
    """Raised when a keyset has no material for a referenced parameter set."""

    def __init__(
        self,
        params_id: str,
        keyset: str = "client",
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"{keyset.capitalize()} keyset has no key material for parameter set {_short(params_id)}",
            code="HD_KEYS_NOT_FOUND",
            details={"params_id": _short(params_id), "keyset": keyset},
            request_id=request_id,
        )


# =============================================================================
# Bridge Errors (HD_BRIDGE_*)
# =============================================================================


class NoBridgeKey(HEDeployError):
    """Raised when no key-switching key exists for a parameter-set pair."""

    def __init__(
        self,
        from_params_id: str,
        to_params_id: str,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=(
                f"No bridge key from {_short(from_params_id)} to {_short(to_params_id)}; "
                "the keyset was not built for this conversion"
            ),
            code="HD_BRIDGE_NO_KEY",
            details={"from": _short(from_params_id), "to": _short(to_params_id)},
            request_id=request_id,
        )


# =============================================================================
# Stub Errors (HD_STUB_*)
# =============================================================================


class StubError(HEDeployError):
    """Base class for caller errors detected by client/server stubs."""

    pass


class ArityMismatch(StubError):
    """Raised when the number of values does not match the function signature."""

    def __init__(
        self,
        function: str,
        expected: int,
        actual: int,
        direction: str = "inputs",
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Function '{function}' expects {expected} {direction}, got {actual}",
            code="HD_STUB_ARITY_MISMATCH",
            details={"function": function, "expected": expected, "actual": actual, "direction": direction},
            request_id=request_id,
        )


class TypeMismatch(StubError):
    """Raised when a value does not fit its declared argument type or tag."""

    def __init__(
        self,
        reason: str,
        function: Optional[str] = None,
        argument: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        details = {}
        if function:
            details["function"] = function
        if argument:
            details["argument"] = argument
        super().__init__(
            message=f"Type mismatch: {reason}",
            code="HD_STUB_TYPE_MISMATCH",
            details=details,
            request_id=request_id,
        )


class UnknownFunction(StubError):
    """Raised when a function name is not in the module registry."""

    def __init__(
        self,
        function: str,
        available: Optional[list] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Module has no function named '{function}'",
            code="HD_STUB_UNKNOWN_FUNCTION",
            details={"function": function, "available": sorted(available or [])},
            request_id=request_id,
        )


# =============================================================================
# Engine Errors (HD_ENGINE_*)
# =============================================================================


class EvaluationError(HEDeployError):
    """Opaque failure surfaced from the Evaluation Engine."""

    def __init__(
        self,
        reason: str,
        function: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Evaluation failed: {reason}",
            code="HD_ENGINE_EVALUATION_FAILED",
            details={"function": function} if function else {},
            request_id=request_id,
        )


# =============================================================================
# Randomness Errors (HD_RNG_*)
# =============================================================================


class ConcurrentAccessError(HEDeployError):
    """Raised when a CSPRNG instance is drawn from by two callers at once."""

    def __init__(
        self,
        generator: str,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Concurrent access to {generator}; callers must serialize draws",
            code="HD_RNG_CONCURRENT_ACCESS",
            details={"generator": generator},
            request_id=request_id,
        )


# =============================================================================
# Configuration Errors (HD_CONFIG_*)
# =============================================================================


class ConfigError(HEDeployError):
    """Base class for configuration errors."""

    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""

    def __init__(
        self,
        config_key: str,
        reason: str,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Invalid configuration for {config_key}: {reason}",
            code="HD_CONFIG_VALIDATION_FAILED",
            details={"config_key": config_key},
            request_id=request_id,
        )


# =============================================================================
# Error Code Registry (for documentation and validation)
# =============================================================================

ERROR_CODES = {
    # Artifact
    "HD_ARTIFACT_VERSION_UNSUPPORTED": "Artifact format version outside supported range",
    "HD_ARTIFACT_CORRUPT": "Artifact manifest or circuit blob is invalid",
    "HD_ARTIFACT_FEATURE_UNSUPPORTED": "Artifact requires unsupported engine features",
    # Keys
    "HD_KEYS_BINDING_MISSING": "External argument has no key binding",
    "HD_KEYS_BINDING_MISMATCH": "Key binding does not match its argument",
    "HD_KEYS_NOT_FOUND": "Keyset lacks material for a parameter set",
    # Bridge
    "HD_BRIDGE_NO_KEY": "No key-switching key for parameter-set pair",
    # Stubs
    "HD_STUB_ARITY_MISMATCH": "Wrong number of values for function",
    "HD_STUB_TYPE_MISMATCH": "Value does not match declared type or tag",
    "HD_STUB_UNKNOWN_FUNCTION": "Function not registered in module",
    # Engine
    "HD_ENGINE_EVALUATION_FAILED": "Evaluation engine failure",
    # RNG
    "HD_RNG_CONCURRENT_ACCESS": "CSPRNG used concurrently",
    # Config
    "HD_CONFIG_VALIDATION_FAILED": "Configuration validation failed",
    # Internal
    "HD_INTERNAL_ERROR": "Internal error",
}


def validate_error_code(code: str) -> bool:
    """Validate that an error code is registered."""
    return code in ERROR_CODES


__all__ = [
    # Base
    "HEDeployError",
    # Artifact
    "ArtifactError",
    "IncompatibleVersion",
    "CorruptArtifact",
    "UnsupportedFeature",
    # Keys
    "KeysetError",
    "MissingKeyBinding",
    "KeyBindingMismatch",
    "KeyNotFound",
    # Bridge
    "NoBridgeKey",
    # Stubs
    "StubError",
    "ArityMismatch",
    "TypeMismatch",
    "UnknownFunction",
    # Engine
    "EvaluationError",
    # RNG
    "ConcurrentAccessError",
    # Config
    "ConfigError",
    "ConfigValidationError",
    # Registry
    "ERROR_CODES",
    "validate_error_code",
]
