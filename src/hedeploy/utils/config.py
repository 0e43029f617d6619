"""
hedeploy Configuration Module

Centralized settings for the deployment environment:
- Environment variable loading (HEDEPLOY_ prefix)
- Type validation via Pydantic
- Secure defaults for production
- Development overrides via .env file

Environment Variable Naming Convention:
- All variables use the HEDEPLOY_ prefix (e.g., HEDEPLOY_ENVIRONMENT)
"""

import logging
from typing import List, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..errors import ConfigValidationError

# Container format versions this build understands
BUILD_MIN_FORMAT_VERSION = 1
BUILD_MAX_FORMAT_VERSION = 1


class HEDeploySettings(BaseSettings):
    """
    Deployment-layer settings.

    Usage:
        from hedeploy.utils.config import get_settings

        lo, hi = get_settings().format_version_range()
    """

    model_config = SettingsConfigDict(
        env_prefix="HEDEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # GENERAL
    # ==========================================================================
    ENVIRONMENT: str = Field(default="development", description="Runtime environment: development, staging, production")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")

    # ==========================================================================
    # ARTIFACTS
    # ==========================================================================
    MIN_FORMAT_VERSION: int = Field(
        default=BUILD_MIN_FORMAT_VERSION, description="Lowest accepted manifest format_version"
    )
    MAX_FORMAT_VERSION: int = Field(
        default=BUILD_MAX_FORMAT_VERSION, description="Highest accepted manifest format_version"
    )
    MAX_BLOB_SIZE: int = Field(default=100 * 1024 * 1024, description="Largest circuit blob accepted, in bytes")

    # ==========================================================================
    # KEYS
    # ==========================================================================
    ALLOW_EXTERNAL_KEYGEN: bool = Field(
        default=False,
        description="Generate keys for external arguments lacking a binding (testing only)",
    )

    # ==========================================================================
    # DETERMINISM (tests only)
    # ==========================================================================
    DETERMINISTIC: bool = Field(default=False, description="Seed CSPRNGs from SEED instead of OS entropy")
    SEED: Optional[int] = Field(default=None, description="Seed used when DETERMINISTIC is enabled")

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    def format_version_range(self) -> Tuple[int, int]:
        """Accepted format_version range, validated against the build's own range."""
        lo, hi = self.MIN_FORMAT_VERSION, self.MAX_FORMAT_VERSION
        if lo > hi:
            raise ConfigValidationError("MIN_FORMAT_VERSION", f"{lo} is greater than MAX_FORMAT_VERSION {hi}")
        if lo < BUILD_MIN_FORMAT_VERSION or hi > BUILD_MAX_FORMAT_VERSION:
            raise ConfigValidationError(
                "FORMAT_VERSION",
                f"range [{lo}, {hi}] exceeds build support "
                f"[{BUILD_MIN_FORMAT_VERSION}, {BUILD_MAX_FORMAT_VERSION}]",
            )
        return lo, hi

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production readiness.

        Returns:
            List of configuration warnings/errors
        """
        issues = []

        if self.is_production():
            if self.DETERMINISTIC:
                issues.append("CRITICAL: HEDEPLOY_DETERMINISTIC=true in production")
            if self.ALLOW_EXTERNAL_KEYGEN:
                issues.append("WARNING: HEDEPLOY_ALLOW_EXTERNAL_KEYGEN=true in production")
        if self.DETERMINISTIC and self.SEED is None:
            issues.append("WARNING: HEDEPLOY_DETERMINISTIC=true without HEDEPLOY_SEED")

        return issues


_settings: Optional[HEDeploySettings] = None


def get_settings() -> HEDeploySettings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = HEDeploySettings()
        _logger = logging.getLogger(__name__)
        for issue in _settings.validate_production_config():
            if issue.startswith("CRITICAL"):
                _logger.critical(issue)
            else:
                _logger.warning(issue)
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
