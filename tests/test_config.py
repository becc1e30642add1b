"""
Tests for sealing configuration and data paths.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from sealbox.sealing.config import SealingConfig
from sealbox.sealing.exceptions import ConfigurationError
from sealbox.utils.paths import get_content_dir, get_data_dir, get_index_path


class TestPaths:
    """Tests for data directory resolution."""

    def test_explicit_override(self, temp_dir):
        with patch.dict(os.environ, {"SEALBOX_DATA_DIR": str(temp_dir)}):
            assert get_data_dir() == temp_dir
            assert get_index_path("sqlite") == temp_dir / "metadata-mapping.db"
            assert get_index_path() == temp_dir / "metadata-mapping.json"
            assert get_content_dir() == temp_dir / "content"

    def test_xdg_fallback(self, temp_dir):
        os.environ.pop("SEALBOX_DATA_DIR", None)
        with patch.dict(os.environ, {"XDG_DATA_HOME": str(temp_dir)}):
            assert get_data_dir() == temp_dir / "sealbox"


class TestSealingConfig:
    """Tests for SealingConfig."""

    def test_defaults(self, temp_dir):
        config = SealingConfig(data_dir=temp_dir)
        assert config.index_backend == "json"
        assert config.short_hash_length == 16
        assert config.include_preview is False
        assert config.resolved_index_path == temp_dir / "metadata-mapping.json"
        assert config.resolved_content_dir == temp_dir / "content"

    def test_explicit_paths_win(self, temp_dir):
        config = SealingConfig(
            data_dir=temp_dir,
            index_backend="sqlite",
            index_path=temp_dir / "custom.db",
            content_dir=temp_dir / "blobs",
        )
        assert config.resolved_index_path == temp_dir / "custom.db"
        assert config.resolved_content_dir == temp_dir / "blobs"

    def test_unknown_backend(self, temp_dir):
        with pytest.raises(ConfigurationError) as exc_info:
            SealingConfig(data_dir=temp_dir, index_backend="redis")
        assert exc_info.value.setting == "index_backend"

    def test_secret_channel_must_be_env(self, temp_dir):
        with pytest.raises(ConfigurationError) as exc_info:
            SealingConfig(data_dir=temp_dir, secret_channel="file")
        assert exc_info.value.setting == "secret_channel"

    @pytest.mark.parametrize("length", [3, 65])
    def test_short_hash_length_bounds(self, temp_dir, length):
        with pytest.raises(ConfigurationError):
            SealingConfig(data_dir=temp_dir, short_hash_length=length)

    def test_from_env(self, temp_dir):
        env = {
            "SEALBOX_DATA_DIR": str(temp_dir),
            "SEALBOX_INDEX_BACKEND": "sqlite",
            "SEALBOX_SHORT_HASH_LENGTH": "24",
            "SEALBOX_INCLUDE_PREVIEW": "true",
            "SEALBOX_GATEWAY_URLS": "https://a.example/ipfs, https://b.example/ipfs,",
            "SEALBOX_ESCROW_URL": "https://escrow.example",
            "SEALBOX_REQUEST_TIMEOUT": "2.5",
        }
        with patch.dict(os.environ, env):
            config = SealingConfig.from_env()

        assert config.data_dir == temp_dir
        assert config.index_backend == "sqlite"
        assert config.short_hash_length == 24
        assert config.include_preview is True
        assert config.gateway_urls == ("https://a.example/ipfs", "https://b.example/ipfs")
        assert config.escrow_url == "https://escrow.example"
        assert config.request_timeout == 2.5
        assert config.resolved_index_path == Path(temp_dir) / "metadata-mapping.db"

    def test_from_env_bad_number(self):
        with patch.dict(os.environ, {"SEALBOX_SHORT_HASH_LENGTH": "many"}):
            with pytest.raises(ConfigurationError):
                SealingConfig.from_env()

    def test_config_holds_no_secrets(self, temp_dir, escrow_env):
        config = SealingConfig(data_dir=temp_dir)
        for value in escrow_env.values():
            if len(value) > 1:
                assert value not in repr(config)
