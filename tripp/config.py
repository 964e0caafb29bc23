"""Configuration management for the Tripp gateway.

Loads and validates environment variables using Pydantic Settings.
"""
from typing import Annotated, List, Optional
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator


class Config(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Identity token verification
    jwks_url: Optional[str] = Field(
        default=None,
        description="JWKS URL publishing the RS256 keys that sign identity tokens"
    )
    expected_issuer: str = Field(
        default="https://herphut.com",
        description="Required `iss` claim of identity tokens"
    )
    expected_audience: str = Field(
        default="tripp",
        description="Required `aud` claim of identity tokens"
    )
    jwks_cache_minutes: int = Field(
        default=5,
        ge=0,
        description="How long a fetched key set is trusted before refetching"
    )
    jwks_timeout_ms: int = Field(
        default=3000,
        gt=0,
        description="Timeout for a single key set fetch"
    )
    jwt_clock_skew_seconds: int = Field(
        default=120,
        ge=0,
        description="Tolerance applied to nbf/exp/iat checks"
    )

    # Legacy HS256 app-session cookie
    app_session_secret: Optional[str] = Field(
        default=None,
        description="Primary HMAC secret for the legacy app-session cookie"
    )
    legacy_signing_secret: Optional[str] = Field(
        default=None,
        description="Previous HMAC secret, tried when the primary one fails"
    )

    # Sessions
    max_sessions_per_user: int = Field(
        default=5,
        ge=1,
        description="Maximum non-revoked sessions kept per user"
    )
    session_ttl_minutes: int = Field(
        default=1440,
        gt=0,
        description="Lifetime of an authenticated session from creation or reuse"
    )
    guest_ttl_minutes: int = Field(
        default=60,
        gt=0,
        description="Lifetime of an anonymous soft session row"
    )
    default_client_id: str = Field(
        default="webchat",
        description="Client identifier used when the request names none"
    )
    refresh_url: str = Field(
        default="https://herphut.com/wp-json/herphut-sso/v1/refresh?return=https%3A%2F%2Ftripp.herphut.com%2F",
        description="Where clients go to re-establish the upstream identity token"
    )

    # Cookies
    id_token_cookie: str = Field(default="HH_ID_TOKEN")
    session_cookie: str = Field(default="HH_SESSION_ID")
    soft_session_cookies: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["SESSION_ID", "ANON_SESSION_ID"],
        description="Non-authoritative session cookies, checked in order"
    )
    anon_session_cookie: str = Field(default="ANON_SESSION_ID")
    app_session_cookie: str = Field(default="tripp_session")
    session_cookie_domain: Optional[str] = Field(
        default=".herphut.com",
        description="Parent domain the session cookie is scoped to; empty for host-only"
    )
    session_cookie_secure: bool = Field(default=True)

    # Rate limiting
    rate_limit_requests: int = Field(
        default=30,
        ge=1,
        description="Requests allowed per key per window"
    )
    rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        description="Fixed window length in seconds"
    )
    rate_limit_storage_uri: str = Field(
        default="memory://",
        description="limits storage URI for rate limit counters, e.g. redis://localhost:6379"
    )

    # CORS / origin guard
    allowed_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["https://tripp.herphut.com", "https://herphut.com"],
        description="Origins allowed to call the API (comma-separated in env)"
    )

    # Supabase configuration
    supabase_url: Optional[str] = Field(default=None, description="Supabase project URL")
    supabase_service_role_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key"
    )
    sessions_table: str = Field(default="chat_sessions")
    audit_table: str = Field(default="audit_logs")
    prefs_table: str = Field(default="user_prefs")

    # OpenAI configuration
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    llm_model: str = Field(default="gpt-4o-mini", description="Chat completion model")
    llm_max_completion_tokens: int = Field(default=1024)
    moderation_model: str = Field(default="omni-moderation-latest")
    moderation_enabled: bool = Field(default=True)
    history_limit: int = Field(
        default=30,
        ge=1,
        description="Maximum conversation turns forwarded to the model"
    )

    # Server configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    @field_validator("allowed_origins", "soft_session_cookies", mode="before")
    @classmethod
    def split_csv(cls, v):
        """Accept comma-separated strings for list settings."""
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @property
    def jwks_timeout_seconds(self) -> float:
        return self.jwks_timeout_ms / 1000.0


# Singleton instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the singleton configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
