"""Tests for environment-driven configuration."""

import pytest

from agent_core import Config, ConfigError

_VARS = ("OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL", "OPENAI_MAX_TOKENS",
         "DEBUG", "OPENAI_STREAM", "LLM_TIMEOUT", "LLM_MAX_RETRIES",
         "LLM_RETRY_DELAY", "MAX_TOOL_RESULT", "SHELL_MAX_MEMORY_MB")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for var in _VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestConfigFromEnv:
    def test_defaults(self, clean_env):
        clean_env.setenv("OPENAI_API_KEY", "sk-1")
        cfg = Config.from_env().validate()
        assert cfg.base_url == "https://api.openai.com"
        assert cfg.model == "gpt-4"
        assert cfg.max_tokens == 8192
        assert cfg.stream is True
        assert cfg.debug is False

    def test_overrides(self, clean_env):
        clean_env.setenv("OPENAI_API_KEY", "sk-1")
        clean_env.setenv("OPENAI_BASE_URL", "http://localhost:1234/v1")
        clean_env.setenv("OPENAI_MAX_TOKENS", "512")
        clean_env.setenv("OPENAI_STREAM", "FALSE")
        clean_env.setenv("DEBUG", "true")
        cfg = Config.from_env()
        assert cfg.base_url == "http://localhost:1234/v1"
        assert cfg.max_tokens == 512
        assert cfg.stream is False
        assert cfg.debug is True

    @pytest.mark.parametrize("value", ["0", "no", "off", ""])
    def test_only_false_disables_streaming(self, clean_env, value):
        clean_env.setenv("OPENAI_STREAM", value)
        assert Config.from_env().stream is True

    def test_bad_integer_falls_back(self, clean_env):
        clean_env.setenv("OPENAI_MAX_TOKENS", "lots")
        assert Config.from_env().max_tokens == 8192

    def test_missing_key(self, clean_env):
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            Config.from_env().validate()

    def test_workdir_must_exist(self, tmp_path):
        with pytest.raises(ConfigError, match="not a directory"):
            Config(api_key="k", workdir=tmp_path / "missing").validate()

    def test_workdir_made_absolute(self, clean_env, tmp_path):
        assert Config(api_key="k", workdir="rel").workdir == tmp_path / "rel"

    def test_shell_memory_zero_disables(self, clean_env):
        clean_env.setenv("SHELL_MAX_MEMORY_MB", "0")
        assert Config.from_env().shell_memory_mb == 0
        clean_env.setenv("SHELL_MAX_MEMORY_MB", "plenty")
        assert Config.from_env().shell_memory_mb == 2048
