"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for pipeline configs.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from tryon_ledger.config.loader import (
    AuthProvider,
    InferenceConfig,
    RetryConfig,
    StorageBackend,
    StorageConfig,
    TryOnConfig,
    load_config,
)
from tryon_ledger.core.pricing import GemPricing
from tryon_ledger.sdk.inference_client import DEFAULT_BASE_URL, DEFAULT_MODEL
from tryon_ledger.storage.db import DEFAULT_DB_PATH


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "tryon.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_full_config_loads_correctly(self):
        """Test that every section is read into the typed config."""
        config_path = self._write_config({
            "inference": {
                "api_key": "r8_secret",
                "model": "acme/tryon-v2",
                "poll_interval": 2,
                "poll_timeout": 60,
                "wait_seconds": 10,
            },
            "storage": {
                "backend": "supabase",
                "bucket": "looks",
                "supabase_url": "https://xyz.supabase.co",
                "supabase_key": "service-role-key",
            },
            "auth": {"provider": "supabase"},
            "pricing": {"standard": 2, "hd": 5},
            "rate_limit": {"limit": 10, "window_seconds": 30},
            "retry": {"max_attempts": 4, "base_delay": 0.5, "max_delay": 8},
            "database": {"path": "/var/lib/tryon/ledger.db"},
        })

        config = load_config(config_path)

        assert config.inference.api_key == "r8_secret"
        assert config.inference.model == "acme/tryon-v2"
        assert config.inference.poll_interval == 2.0
        assert config.inference.poll_timeout == 60.0
        assert config.inference.wait_seconds == 10
        assert config.storage.backend is StorageBackend.SUPABASE
        assert config.storage.bucket == "looks"
        assert config.auth.provider is AuthProvider.SUPABASE
        assert config.pricing == GemPricing(standard=2, hd=5)
        assert config.rate_limit.limit == 10
        assert config.rate_limit.window_seconds == 30.0
        assert config.retry.policy().max_attempts == 4
        assert config.retry.policy().base_delay == 0.5
        assert config.database_path == "/var/lib/tryon/ledger.db"

    def test_defaults_for_missing_sections(self):
        """Test that omitted sections fall back to defaults."""
        config_path = self._write_config({"auth": {"tokens": {"tok-alice": "alice"}}})

        config = load_config(config_path)

        assert config.inference.base_url == DEFAULT_BASE_URL
        assert config.inference.model == DEFAULT_MODEL
        assert config.inference.api_key is None
        assert config.inference.poll_interval == 3.0
        assert config.inference.poll_timeout == 180.0
        assert config.storage.backend is StorageBackend.LOCAL
        assert config.auth.provider is AuthProvider.STATIC
        assert config.auth.tokens == {"tok-alice": "alice"}
        assert config.pricing == GemPricing(standard=1, hd=2)
        assert config.rate_limit.limit == 5
        assert config.retry.policy().max_attempts == 3
        assert config.database_path == DEFAULT_DB_PATH

    def test_enum_values_are_case_insensitive(self):
        """Test that backend names are matched case-insensitively."""
        config_path = self._write_config({"storage": {"backend": "LOCAL"}})
        assert load_config(config_path).storage.backend is StorageBackend.LOCAL

    def test_missing_file_raises_error(self):
        """Test that a missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, "absent.yaml"))

    def test_empty_file_raises_error(self):
        """Test that an empty config file is rejected."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_config(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that malformed YAML surfaces as a YAMLError."""
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("inference: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_non_mapping_rejected(self):
        """Test that a top-level list is rejected."""
        config_path = self._write_config(["inference"])

        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(config_path)

    def test_unknown_top_level_keys_rejected(self):
        """Test that typos in section names fail loudly."""
        config_path = self._write_config({"pricng": {"standard": 1}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(config_path)

    def test_unknown_section_keys_rejected(self):
        """Test that typos inside a section fail loudly."""
        config_path = self._write_config({"pricing": {"standart": 1}})

        with pytest.raises(ValueError, match="Unknown pricing keys"):
            load_config(config_path)

    def test_section_must_be_mapping(self):
        """Test that a scalar section is rejected."""
        config_path = self._write_config({"retry": 3})

        with pytest.raises(ValueError, match="'retry' must be a dictionary"):
            load_config(config_path)

    @pytest.mark.parametrize("section,values", [
        ("pricing", {"standard": 0}),
        ("pricing", {"hd": -1}),
        ("pricing", {"standard": 1.5}),
        ("pricing", {"hd": True}),
        ("rate_limit", {"limit": 0}),
        ("rate_limit", {"window_seconds": "sixty"}),
        ("retry", {"max_attempts": 0}),
        ("retry", {"base_delay": 10, "max_delay": 1}),
        ("inference", {"poll_interval": 0}),
        ("inference", {"poll_interval": 5, "poll_timeout": 2}),
        ("inference", {"model": ""}),
        ("storage", {"backend": "s3"}),
        ("auth", {"provider": "ldap"}),
        ("auth", {"tokens": ["tok-alice"]}),
    ])
    def test_invalid_values_rejected(self, section, values):
        """Test that out-of-range or mistyped values are rejected."""
        config_path = self._write_config({section: values})

        with pytest.raises(ValueError):
            load_config(config_path)

    def test_supabase_storage_requires_credentials(self):
        """Test that the hosted backend cannot be selected without credentials."""
        config_path = self._write_config({"storage": {"backend": "supabase"}})

        with pytest.raises(ValueError, match="supabase_url"):
            load_config(config_path)

    def test_supabase_auth_requires_credentials(self):
        """Test that hosted auth needs the storage credentials too."""
        config_path = self._write_config({"auth": {"provider": "supabase"}})

        with pytest.raises(ValueError, match="requires storage.supabase_url"):
            load_config(config_path)


class TestConfigObjects:
    """Test config dataclasses directly."""

    def test_default_config(self):
        """Test that the all-defaults config is valid."""
        config = TryOnConfig()
        assert config.storage.backend is StorageBackend.LOCAL
        assert config.auth.tokens == {}

    def test_inference_config_validation(self):
        """Test inference bounds."""
        with pytest.raises(ValueError):
            InferenceConfig(request_timeout=0)
        with pytest.raises(ValueError):
            InferenceConfig(wait_seconds=-1)

    def test_storage_config_with_credentials(self):
        """Test that credentials satisfy the hosted backend."""
        config = StorageConfig(
            backend=StorageBackend.SUPABASE,
            supabase_url="https://xyz.supabase.co",
            supabase_key="key",
        )
        assert config.bucket == "tryon-images"

    def test_retry_config_policy(self):
        """Test that retry settings build an inference retry policy."""
        policy = RetryConfig(max_attempts=5, base_delay=1.0, max_delay=4.0).policy()
        assert policy.max_attempts == 5
        assert policy.delay_for(3) == 4.0
