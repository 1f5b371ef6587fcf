from __future__ import annotations

import os

from pydantic import BaseModel, Field

from .contracts import ProviderName


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class ProxyConfig(BaseModel):
    # Provider credentials
    openai_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    anthropic_api_key: str | None = Field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY"))
    gemini_api_key: str | None = Field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    )
    credentials_path: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_PATH"))
    fernet_key: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_FERNET_KEY"))

    # Provider endpoints
    openai_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    )
    anthropic_base_url: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
    )
    gemini_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
        )
    )

    # Routing defaults
    default_provider: str = Field(
        default_factory=lambda: os.getenv("LLM_PROXY_DEFAULT_PROVIDER", ProviderName.OPENAI.value)
    )
    openai_model: str = Field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
    anthropic_model: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
    )
    gemini_model: str = Field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-1.5-pro"))
    default_temperature: float = Field(
        default_factory=lambda: float(os.getenv("LLM_PROXY_DEFAULT_TEMPERATURE", "0.7"))
    )
    default_max_tokens: int = Field(
        default_factory=lambda: int(os.getenv("LLM_PROXY_DEFAULT_MAX_TOKENS", "1000"))
    )

    # Retry / fallback policy
    upstream_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60"))
    )
    upstream_max_retries: int = Field(default_factory=lambda: int(os.getenv("UPSTREAM_MAX_RETRIES", "2")))
    upstream_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_INITIAL_SECONDS", "0.5"))
    )
    upstream_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_MAX_SECONDS", "8.0"))
    )
    route_deadline_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ROUTE_DEADLINE_SECONDS", "90"))
    )
    enable_fallback: bool = Field(default_factory=lambda: _env_flag("LLM_PROXY_ENABLE_FALLBACK"))
    fallback_provider: str | None = Field(
        default_factory=lambda: os.getenv("LLM_PROXY_FALLBACK_PROVIDER") or None
    )

    # Metering
    usage_log_path: str | None = Field(default_factory=lambda: os.getenv("USAGE_LOG_PATH") or None)
    pricing_file: str | None = Field(default_factory=lambda: os.getenv("PRICING_FILE") or None)
    chars_per_token: int = Field(default_factory=lambda: int(os.getenv("CHARS_PER_TOKEN", "4")))

    # Submission budget
    enable_budget: bool = Field(default_factory=lambda: _env_flag("LLM_PROXY_ENABLE_BUDGET", "true"))
    max_cost_per_submission: float = Field(
        default_factory=lambda: float(os.getenv("LLM_PROXY_MAX_COST", "10.00"))
    )
    max_time_ms_per_submission: int = Field(
        default_factory=lambda: int(os.getenv("LLM_PROXY_MAX_TIME", "3600000"))
    )

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_flag("ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    server_auth_token: str | None = Field(default_factory=lambda: os.getenv("SERVER_AUTH_TOKEN"))
    require_bearer_token: bool = Field(default_factory=lambda: _env_flag("REQUIRE_BEARER_TOKEN"))
    enable_api_docs: bool = Field(default_factory=lambda: _env_flag("ENABLE_API_DOCS"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(default_factory=lambda: _env_flag("CORS_ALLOW_CREDENTIALS"))
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))
    max_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_MESSAGES", "64")))
    max_total_message_chars: int = Field(
        default_factory=lambda: int(os.getenv("MAX_TOTAL_MESSAGE_CHARS", "200000"))
    )

    def secrets(self) -> list[str]:
        candidates = (
            self.openai_api_key,
            self.anthropic_api_key,
            self.gemini_api_key,
            self.fernet_key,
            self.server_auth_token,
        )
        return [s for s in candidates if s]
