"""Tests for settings loading."""

import pytest
import yaml

from research_desk.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from research_desk.errors import ConfigurationError


class TestSettings:
    """Test validation of individual settings."""

    def test_defaults(self):
        settings = Settings()
        assert settings.artifact_capacity == 20
        assert settings.artifact_retention_days == 30
        assert settings.core_keys == ["profile", "quote"]
        assert settings.retry_max_attempts == 3

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(artifact_capacity=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            Settings(retry_base_delay=-1)

    def test_core_keys_cannot_be_empty(self):
        with pytest.raises(ValueError):
            Settings(core_keys=["", "  "])

    def test_require(self):
        settings = Settings(fmp_api_key="abc")
        assert settings.require("fmp_api_key") == "abc"
        with pytest.raises(ConfigurationError):
            settings.require("finnhub_api_key")


class TestLoadSettings:
    """Test YAML plus environment loading."""

    def test_shipped_config_is_valid(self):
        settings = load_settings(DEFAULT_CONFIG_PATH, environ={})
        assert settings.cache_ttls.quote == 300

    def test_environment_overrides_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"artifact_capacity": 5, "openai_model": "gpt-4o"}))

        settings = load_settings(path, environ={"ARTIFACT_CAPACITY": "7", "FMP_API_KEY": "key"})

        assert settings.artifact_capacity == 7
        assert settings.openai_model == "gpt-4o"
        assert settings.fmp_api_key == "key"

    def test_config_path_from_environment(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("retry_max_attempts: 5\n")

        settings = load_settings(environ={"RESEARCH_DESK_CONFIG": str(path)})

        assert settings.retry_max_attempts == 5

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "missing.yaml", environ={})

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_settings(path, environ={}).artifact_capacity == 20

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_settings(path, environ={})

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("artifact_capacity: 0\n")
        with pytest.raises(ConfigurationError):
            load_settings(path, environ={})
