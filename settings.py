# /settings.py
# This file defines the configuration settings for the ExplainGithub API.
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore") # Create .env file in project root with provider and LLM credentials.

    app_name: str = "ExplainGithub API"
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL") # Used to build OAuth redirect URIs.

    # GitHub
    github_token: str | None = Field(default=None, alias="GITHUB_TOKEN") # Server-wide fallback for anonymous browsing.
    github_api_base: str = "https://api.github.com"
    github_oauth_base: str = "https://github.com"
    github_client_id: str | None = Field(default=None, alias="GITHUB_CLIENT_ID")
    github_client_secret: str | None = Field(default=None, alias="GITHUB_CLIENT_SECRET")

    # GitLab
    gitlab_base_url: str = Field(default="https://gitlab.com", alias="GITLAB_BASE_URL")
    gitlab_client_id: str | None = Field(default=None, alias="GITLAB_CLIENT_ID")
    gitlab_client_secret: str | None = Field(default=None, alias="GITLAB_CLIENT_SECRET")
    gitlab_token_lifetime_s: int = 7200 # GitLab OAuth tokens expire after 2 hours unless told otherwise.

    http_timeout_s: float = 10.0

    # Repository browsing
    file_cache_ttl_s: int = 300
    file_cache_size: int = 1024
    max_tree_items: int = 6_000  # Safety on huge repos.
    fetch_retries: int = 3
    fetch_retry_delay_s: float = 1.0 # Linear backoff: attempt * delay.

    # Provider tokens
    token_validation_interval_s: int = 300   # Revalidate a cached token after 5 minutes.
    token_refresh_threshold_s: int = 600     # Refresh proactively 10 minutes before expiry.
    token_recent_validation_s: int = 600     # A refresh right after a validation is a no-op.
    token_expiry_warning_s: int = 900        # Validation reports needsRefresh inside this window.
    oauth_state_ttl_s: int = 600

    # LLM (any OpenAI-compatible endpoint)
    llm_api_key: str | None = Field(default=None, alias="LLM_API_KEY")
    llm_base_url: str | None = Field(default=None, alias="LLM_BASE_URL")
    llm_model: str = Field(default="gpt-4o-mini", alias="LLM_MODEL")
    llm_max_tokens: int = 1500
    llm_temperature: float = 0.2

    # Chat context management
    max_context_chars: int = 40_000
    max_readme_chars: int = 12_000
    max_structure_chars: int = 12_000
    max_tagged_file_chars: int = 10_000
    max_history_turns: int = 6
    stream_chunk_chars: int = 50
    stream_chunk_delay_s: float = 0.05
    title_max_chars: int = 50

    # Persistence
    database_url: str = Field(default="sqlite+aiosqlite:///./explaingithub.db", alias="DATABASE_URL")
    db_save_retries: int = 3
    db_retry_delay_s: float = 1.0

    # Optional Django UI (basic)
    enable_django_ui: bool = Field(default=False, alias="ENABLE_DJANGO_UI")


settings = Settings()
