"""
Configuration management.

All configuration keys are defined here; no other module should invent
config keys. Values come from a YAML file, with environment variables
taking precedence for secrets and endpoints.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import InboxLedgerError


class ConfigValidationError(InboxLedgerError):
    """Raised when configuration validation fails."""

    pass


@dataclass
class OAuthConfig:
    """OAuth client used to refresh mailbox access tokens."""

    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"
    # Retries for transient token endpoint failures (429/5xx)
    max_retries: int = 3
    backoff_factor: float = 0.5
    # An access token is reused only if it is valid for at least this long
    refresh_buffer_seconds: int = 300


@dataclass
class GmailConfig:
    """Gmail REST API settings."""

    base_url: str = "https://gmail.googleapis.com/gmail/v1"
    # Max message ids listed per linked domain per run
    max_results: int = 50
    # Extra search predicates, e.g. "category:updates"
    extra_query: str | None = None
    timeout_seconds: int = 30
    # List every unread message instead of one query per linked domain;
    # senders with no linked account are then skipped and left unread
    scan_all_unread: bool = False


@dataclass
class LLMConfig:
    """Extraction model settings (Ollama-compatible chat endpoint).

    - enabled: Master switch; when off only the rule extractor runs
    - base_url: localhost, LAN or remote server
    - auth_header: Optional auth header for proxied deployments
    """

    enabled: bool = True
    base_url: str = "http://localhost:11434"
    auth_header: str | None = None
    model_fast: str = "qwen2.5:3b-instruct-q4_K_M"
    model_fallback: str | None = "qwen2.5:7b-instruct-q4_K_M"
    timeout_seconds: int = 60
    # Attempts per model on timeouts, connection errors and 429/5xx
    max_retries: int = 2
    # First backoff delay; doubles on every retry
    backoff_seconds: float = 1.0
    max_concurrent: int = 2

    def is_remote(self) -> bool:
        """Check if the model server is remote (not localhost)."""
        url_lower = self.base_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class ImporterConfig:
    """Import run settings."""

    # Parallel message fetches within one user
    fetch_workers: int = 4
    # Users processed concurrently
    max_user_workers: int = 2
    # Wall-clock budget for one run; 0 disables the deadline
    run_time_budget_seconds: int = 540
    # Flag thresholds for unusual amounts
    unusual_amount_max: float = 10_000.0
    unusual_amount_min: float = 0.01


@dataclass
class Config:
    """Application configuration."""

    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    importer: ImporterConfig = field(default_factory=ImporterConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/ledger.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.oauth.client_id:
            errors.append("oauth.client_id is required")
        if not self.oauth.client_secret:
            errors.append("oauth.client_secret is required")
        if not self.gmail.base_url:
            errors.append("gmail.base_url is required")

        if self.llm.enabled and not self.llm.base_url:
            errors.append("llm.base_url is required when LLM is enabled")

        if self.importer.fetch_workers < 1:
            errors.append("importer.fetch_workers must be >= 1")
        if self.importer.max_user_workers < 1:
            errors.append("importer.max_user_workers must be >= 1")
        if self.importer.unusual_amount_min >= self.importer.unusual_amount_max:
            errors.append("importer.unusual_amount_min must be < unusual_amount_max")

        return errors

    def require_valid(self) -> None:
        """Raise ConfigValidationError if validate() reports anything."""
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - GMAIL_CLIENT_ID
    - GMAIL_CLIENT_SECRET
    - INBOX_LEDGER_LLM_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_MODEL (fast model name)
    - OLLAMA_MODEL_FALLBACK (fallback model name)
    - OLLAMA_TIMEOUT (request timeout in seconds)
    - INBOX_LEDGER_DB (state database path)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    oauth_data = data.get("oauth", {})
    oauth = OAuthConfig(
        client_id=os.environ.get("GMAIL_CLIENT_ID", oauth_data.get("client_id", "")),
        client_secret=os.environ.get(
            "GMAIL_CLIENT_SECRET", oauth_data.get("client_secret", "")
        ),
        token_url=oauth_data.get("token_url", "https://oauth2.googleapis.com/token"),
        max_retries=oauth_data.get("max_retries", 3),
        backoff_factor=oauth_data.get("backoff_factor", 0.5),
        refresh_buffer_seconds=oauth_data.get("refresh_buffer_seconds", 300),
    )

    gmail_data = data.get("gmail", {})
    gmail = GmailConfig(
        base_url=gmail_data.get("base_url", "https://gmail.googleapis.com/gmail/v1"),
        max_results=gmail_data.get("max_results", 50),
        extra_query=gmail_data.get("extra_query"),
        timeout_seconds=gmail_data.get("timeout_seconds", 30),
        scan_all_unread=gmail_data.get("scan_all_unread", False),
    )

    llm_data = data.get("llm", {})
    llm = LLMConfig(
        enabled=_env_bool("INBOX_LEDGER_LLM_ENABLED", llm_data.get("enabled", True)),
        base_url=os.environ.get(
            "OLLAMA_URL", llm_data.get("base_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", llm_data.get("auth_header")),
        model_fast=os.environ.get(
            "OLLAMA_MODEL", llm_data.get("model_fast", "qwen2.5:3b-instruct-q4_K_M")
        ),
        model_fallback=os.environ.get(
            "OLLAMA_MODEL_FALLBACK",
            llm_data.get("model_fallback", "qwen2.5:7b-instruct-q4_K_M"),
        ),
        timeout_seconds=int(
            os.environ.get("OLLAMA_TIMEOUT", llm_data.get("timeout_seconds", 60))
        ),
        max_retries=llm_data.get("max_retries", 2),
        backoff_seconds=llm_data.get("backoff_seconds", 1.0),
        max_concurrent=llm_data.get("max_concurrent", 2),
    )

    importer_data = data.get("importer", {})
    importer = ImporterConfig(
        fetch_workers=importer_data.get("fetch_workers", 4),
        max_user_workers=importer_data.get("max_user_workers", 2),
        run_time_budget_seconds=importer_data.get("run_time_budget_seconds", 540),
        unusual_amount_max=importer_data.get("unusual_amount_max", 10_000.0),
        unusual_amount_min=importer_data.get("unusual_amount_min", 0.01),
    )

    state_db = os.environ.get("INBOX_LEDGER_DB", data.get("state_db_path", "data/ledger.db"))

    return Config(
        oauth=oauth,
        gmail=gmail,
        llm=llm,
        importer=importer,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# inbox-ledger configuration
#
# Secrets may also be supplied via GMAIL_CLIENT_ID / GMAIL_CLIENT_SECRET.

oauth:
  client_id: "YOUR_CLIENT_ID.apps.googleusercontent.com"
  client_secret: "YOUR_CLIENT_SECRET"
  token_url: "https://oauth2.googleapis.com/token"
  max_retries: 3                 # Transient token endpoint failures
  backoff_factor: 0.5
  refresh_buffer_seconds: 300    # Refresh tokens expiring within 5 minutes

gmail:
  base_url: "https://gmail.googleapis.com/gmail/v1"
  max_results: 50                # Unread messages listed per linked domain
  extra_query: null              # e.g. "category:updates"
  timeout_seconds: 30
  scan_all_unread: false          # true = one unfiltered unread listing

# Extraction model (Ollama-compatible /api/chat)
llm:
  enabled: true                  # false = rule-based extraction only
  base_url: "http://localhost:11434"
  auth_header: null              # Optional auth header for proxied deployments
  model_fast: "qwen2.5:3b-instruct-q4_K_M"
  model_fallback: "qwen2.5:7b-instruct-q4_K_M"
  timeout_seconds: 60
  max_retries: 2
  backoff_seconds: 1.0
  max_concurrent: 2

importer:
  fetch_workers: 4               # Parallel message fetches per user
  max_user_workers: 2            # Users processed concurrently
  run_time_budget_seconds: 540   # 0 = no deadline
  unusual_amount_max: 10000.0
  unusual_amount_min: 0.01

state_db_path: "data/ledger.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
