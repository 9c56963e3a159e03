"""
Unit tests for server configuration.

Tests cover:
- Defaults
- Environment loading
- Validation failures
"""

import pytest

from backend.safeback_server.config import (
    EngineConfig,
    HttpConfig,
    PayloadBackend,
    PayloadStoreConfig,
    ServerConfig,
)


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        config = ServerConfig()

        assert config.engine.token_ttl_seconds == 600
        assert config.engine.pre_restore_snapshot is True
        assert config.engine.parallel_restore is False
        assert config.payload.backend == PayloadBackend.LOCAL
        assert config.limits.team_chat_max_messages == 5000

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("TOKEN_TTL_SECONDS", "120")
        monkeypatch.setenv("PARALLEL_RESTORE", "true")
        monkeypatch.setenv("CONTINUE_ON_NONCRITICAL_FAILURE", "TRUE")
        monkeypatch.setenv("TEAM_CHAT_MAX_MESSAGES", "250")
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example.com, https://b.example.com")

        config = ServerConfig.from_env()

        assert config.storage.data_dir == str(tmp_path)
        assert config.engine.token_ttl_seconds == 120
        assert config.engine.parallel_restore is True
        assert config.engine.continue_on_noncritical_failure is True
        assert config.limits.team_chat_max_messages == 250
        assert config.http.cors_origins == ("https://a.example.com", "https://b.example.com")

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("PAYLOAD_BACKEND", "ftp")

        with pytest.raises(ValueError, match="PAYLOAD_BACKEND"):
            PayloadStoreConfig.from_env()

    def test_s3_requires_bucket(self):
        config = ServerConfig(payload=PayloadStoreConfig(backend=PayloadBackend.S3, bucket=""))

        with pytest.raises(ValueError, match="S3_BUCKET"):
            config.validate()

    def test_token_ttl_must_be_positive(self):
        config = ServerConfig(engine=EngineConfig(token_ttl_seconds=0))

        with pytest.raises(ValueError, match="TOKEN_TTL_SECONDS"):
            config.validate()

    def test_http_defaults(self):
        assert HttpConfig().port == 8081
        assert HttpConfig().cors_origins == ("*",)
