"""
Tests for HEDEPLOY_* settings and the consumers that read them.
"""

import pytest

from hedeploy.artifact import ArtifactLoader
from hedeploy.errors import ConfigValidationError
from hedeploy.lwe.csprng import EncryptionCSPRNG, SecretCSPRNG
from hedeploy.utils.config import (
    BUILD_MAX_FORMAT_VERSION,
    BUILD_MIN_FORMAT_VERSION,
    HEDeploySettings,
    get_settings,
    reset_settings,
)


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    for name in ("ENVIRONMENT", "DETERMINISTIC", "SEED", "ALLOW_EXTERNAL_KEYGEN", "MAX_FORMAT_VERSION", "LOG_LEVEL"):
        monkeypatch.delenv(f"HEDEPLOY_{name}", raising=False)
    reset_settings()
    yield
    reset_settings()


class TestSettings:
    """Tests for settings validation."""

    def test_defaults(self):
        settings = HEDeploySettings(_env_file=None)
        assert settings.format_version_range() == (BUILD_MIN_FORMAT_VERSION, BUILD_MAX_FORMAT_VERSION)
        assert not settings.ALLOW_EXTERNAL_KEYGEN
        assert not settings.DETERMINISTIC
        assert settings.validate_production_config() == []

    def test_inverted_range(self):
        settings = HEDeploySettings(_env_file=None, MIN_FORMAT_VERSION=1, MAX_FORMAT_VERSION=0)
        with pytest.raises(ConfigValidationError):
            settings.format_version_range()

    def test_range_beyond_build(self):
        settings = HEDeploySettings(_env_file=None, MAX_FORMAT_VERSION=BUILD_MAX_FORMAT_VERSION + 1)
        with pytest.raises(ConfigValidationError):
            settings.format_version_range()

    def test_production_issues(self):
        settings = HEDeploySettings(
            _env_file=None, ENVIRONMENT="production", DETERMINISTIC=True, SEED=1, ALLOW_EXTERNAL_KEYGEN=True
        )
        issues = settings.validate_production_config()
        assert any(issue.startswith("CRITICAL") for issue in issues)
        assert any("ALLOW_EXTERNAL_KEYGEN" in issue for issue in issues)

    def test_deterministic_without_seed(self):
        settings = HEDeploySettings(_env_file=None, DETERMINISTIC=True)
        assert settings.validate_production_config() == ["WARNING: HEDEPLOY_DETERMINISTIC=true without HEDEPLOY_SEED"]

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("HEDEPLOY_ALLOW_EXTERNAL_KEYGEN", "true")
        assert get_settings().ALLOW_EXTERNAL_KEYGEN

    def test_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first


class TestSettingsConsumers:
    """Settings are picked up by the loader and the generators."""

    def test_loader_rejects_bad_env_range(self, monkeypatch):
        monkeypatch.setenv("HEDEPLOY_MAX_FORMAT_VERSION", str(BUILD_MAX_FORMAT_VERSION + 5))
        with pytest.raises(ConfigValidationError):
            ArtifactLoader()

    def test_csprng_from_settings_seeded(self, monkeypatch):
        monkeypatch.setenv("HEDEPLOY_DETERMINISTIC", "true")
        monkeypatch.setenv("HEDEPLOY_SEED", "42")
        rng = SecretCSPRNG.from_settings()
        assert rng.deterministic
        assert rng.next(32) == SecretCSPRNG.from_seed(42).next(32)
        assert EncryptionCSPRNG.from_settings().stream_id != rng.stream_id

    def test_csprng_from_settings_refused_in_production(self, monkeypatch):
        monkeypatch.setenv("HEDEPLOY_ENVIRONMENT", "production")
        monkeypatch.setenv("HEDEPLOY_DETERMINISTIC", "true")
        monkeypatch.setenv("HEDEPLOY_SEED", "1")
        with pytest.raises(ConfigValidationError) as exc:
            SecretCSPRNG.from_settings()
        assert exc.value.details["config_key"] == "DETERMINISTIC"
        with pytest.raises(ConfigValidationError):
            EncryptionCSPRNG.from_settings()

    def test_csprng_from_settings_production_entropy(self, monkeypatch):
        monkeypatch.setenv("HEDEPLOY_ENVIRONMENT", "production")
        rng = SecretCSPRNG.from_settings()
        assert not rng.deterministic

    def test_csprng_from_settings_requires_seed(self, monkeypatch):
        monkeypatch.setenv("HEDEPLOY_DETERMINISTIC", "true")
        with pytest.raises(ConfigValidationError):
            SecretCSPRNG.from_settings()

    def test_csprng_from_settings_entropy(self):
        rng = SecretCSPRNG.from_settings()
        assert not rng.deterministic
        assert rng.stream_id != SecretCSPRNG.from_settings().stream_id
