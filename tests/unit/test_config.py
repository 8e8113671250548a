"""
Configuration Unit Tests
========================

[UNIT] Tests for config.py environment parsing and validation.
"""

import pytest

from config import (
    DEFAULT_MODELS,
    DEFAULT_RELAYS,
    Config,
    ConfigError,
    DVMConfig,
    InferenceConfig,
    RelayConfig,
)

KEY = "11" * 32


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("NOSTR_PRIVATE_KEY", "NOSTR_RELAYS", "ALLOWED_PUBKEY", "DVM_MODELS",
                 "GROQ_API_KEY", "DVM_INFERENCE_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestEnvironment:
    """Test defaults and environment overrides."""

    def test_defaults(self, clean_env):
        cfg = Config()

        assert cfg.relay.relays == DEFAULT_RELAYS
        assert cfg.inference.models == DEFAULT_MODELS
        assert cfg.dvm.allowed_pubkey is None
        assert cfg.dvm.inference_timeout == 60.0
        assert cfg.relay.max_reconnect_attempts == 5
        assert cfg.publish.max_attempts == 3

    def test_relay_list(self, clean_env):
        clean_env.setenv("NOSTR_RELAYS", " wss://a , ,wss://b")
        assert RelayConfig().relays == ["wss://a", "wss://b"]

    def test_allowed_pubkey(self, clean_env):
        clean_env.setenv("ALLOWED_PUBKEY", "ab" * 32)
        assert DVMConfig().allowed_pubkey == "ab" * 32

    def test_bad_float_falls_back(self, clean_env):
        clean_env.setenv("DVM_INFERENCE_TIMEOUT", "soon")
        assert DVMConfig().inference_timeout == 60.0

    def test_models(self, clean_env):
        clean_env.setenv("DVM_MODELS", "m1,m2")
        assert InferenceConfig().models == ["m1", "m2"]


class TestValidate:
    """Test startup validation."""

    def test_valid(self, clean_env):
        clean_env.setenv("NOSTR_PRIVATE_KEY", KEY)
        Config().validate()

    @pytest.mark.parametrize("key", ["", "abc", "zz" * 32])
    def test_bad_private_key(self, clean_env, key):
        clean_env.setenv("NOSTR_PRIVATE_KEY", key)
        with pytest.raises(ConfigError):
            Config().validate()

    def test_no_relays(self, clean_env):
        clean_env.setenv("NOSTR_PRIVATE_KEY", KEY)
        cfg = Config()
        cfg.relay.relays = []
        with pytest.raises(ConfigError):
            cfg.validate()

    def test_no_models(self, clean_env):
        clean_env.setenv("NOSTR_PRIVATE_KEY", KEY)
        cfg = Config()
        cfg.inference.models = []
        with pytest.raises(ConfigError):
            cfg.validate()
