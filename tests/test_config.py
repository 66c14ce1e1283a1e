"""Tests for configuration loading."""

from pathlib import Path

import pytest

from inbox_ledger.config import (
    Config,
    ConfigValidationError,
    LLMConfig,
    OAuthConfig,
    create_default_config,
    load_config,
)

ENV_VARS = (
    "GMAIL_CLIENT_ID",
    "GMAIL_CLIENT_SECRET",
    "INBOX_LEDGER_LLM_ENABLED",
    "OLLAMA_URL",
    "OLLAMA_AUTH_HEADER",
    "OLLAMA_MODEL",
    "OLLAMA_MODEL_FALLBACK",
    "OLLAMA_TIMEOUT",
    "INBOX_LEDGER_DB",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config.gmail.max_results == 50
        assert config.gmail.scan_all_unread is False
        assert config.llm.enabled is True
        assert config.importer.unusual_amount_max == 10_000.0
        assert config.state_db_path == Path("data/ledger.db")

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
oauth:
  client_id: "id"
  client_secret: "secret"
gmail:
  max_results: 10
  scan_all_unread: true
llm:
  enabled: false
importer:
  fetch_workers: 8
  run_time_budget_seconds: 0
state_db_path: "/tmp/ledger.db"
"""
        )
        config = load_config(path)
        assert config.oauth.client_id == "id"
        assert config.gmail.max_results == 10
        assert config.gmail.scan_all_unread is True
        assert config.llm.enabled is False
        assert config.importer.fetch_workers == 8
        assert config.importer.run_time_budget_seconds == 0
        assert config.state_db_path == Path("/tmp/ledger.db")
        assert config.validate() == []

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("oauth:\n  client_id: from-file\nllm:\n  enabled: true\n")
        monkeypatch.setenv("GMAIL_CLIENT_ID", "from-env")
        monkeypatch.setenv("INBOX_LEDGER_LLM_ENABLED", "false")
        monkeypatch.setenv("OLLAMA_URL", "http://gpu-box:11434")
        monkeypatch.setenv("OLLAMA_TIMEOUT", "15")
        monkeypatch.setenv("INBOX_LEDGER_DB", str(tmp_path / "env.db"))

        config = load_config(path)

        assert config.oauth.client_id == "from-env"
        assert config.llm.enabled is False
        assert config.llm.base_url == "http://gpu-box:11434"
        assert config.llm.timeout_seconds == 15
        assert config.state_db_path == tmp_path / "env.db"

    def test_default_template_loads(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        create_default_config(path)
        config = load_config(path)
        assert config.oauth.token_url == "https://oauth2.googleapis.com/token"
        assert config.gmail.scan_all_unread is False
        assert config.importer.run_time_budget_seconds == 540


class TestValidation:
    def test_missing_credentials(self):
        errors = Config().validate()
        assert "oauth.client_id is required" in errors
        assert "oauth.client_secret is required" in errors

    def test_thresholds_must_be_ordered(self):
        config = Config(oauth=OAuthConfig(client_id="id", client_secret="s"))
        config.importer.unusual_amount_min = 20_000
        assert any("unusual_amount_min" in e for e in config.validate())

    def test_require_valid_raises(self):
        with pytest.raises(ConfigValidationError):
            Config().require_valid()

    def test_llm_remote_detection(self):
        assert LLMConfig(base_url="http://localhost:11434").is_remote() is False
        assert LLMConfig(base_url="https://llm.example.com").is_remote() is True
