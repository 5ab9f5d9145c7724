"""kycflow configuration: settings, model tiers and review policy knobs."""

from typing import Literal

from pydantic_settings import BaseSettings

ModelTier = Literal["sonnet", "haiku"]
ReflectionProviderName = Literal["mock", "claude"]
RiskAnalyzerName = Literal["pattern", "llm"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Keys
    anthropic_api_key: str = ""
    kycflow_api_key: str = ""  # Empty = auth disabled (dev mode)

    # Database
    database_url: str = "sqlite:///data/kycflow.db"

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:3000"

    # LLM defaults
    default_max_tokens: int = 1024
    default_max_retries: int = 2
    default_temperature: float = 0.0
    model_sonnet: str = "claude-sonnet-4-6"
    model_haiku: str = "claude-haiku-4-5-20251001"

    # Reflection (bounded self-correction)
    reflection_provider: ReflectionProviderName = "mock"
    reflection_timeout_seconds: float = 15.0
    reflection_test_mode: str = ""  # "" | "rerun" | "human" | "section" (mock provider only)

    # Risk-signal analysis
    risk_analyzer: RiskAnalyzerName = "pattern"
    risk_fallback_enabled: bool = True

    # Graph metadata on responses
    include_graph_definition: bool = False
    include_graph_diff: bool = False

    # Checkpoints
    checkpoint_max_age_hours: float = 24.0

    # Non-durable resume cache (legacy second human gate)
    resume_cache_ttl_seconds: float = 900.0
    resume_cache_max_entries: int = 100
    resume_cache_sweep_seconds: float = 60.0

    # EDD trigger policy (natural-language reject reasons)
    edd_trigger_threshold: int = 4
    edd_cap_ownership: int = 3
    edd_cap_offshore: int = 3
    edd_cap_identity: int = 1
    edd_cap_source_of_funds: int = 1
    edd_cap_policy: int = 1

    # Approval reminders
    reminder_delay_seconds: int = 180
    reminder_cooldown_seconds: int = 300

    # Email / SMTP (approval notifications)
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    approval_email_to: str = ""
    approval_base_url: str = "http://localhost:8000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()


def get_model_map() -> dict[str, str]:
    """Resolve model map from settings (env-overridable)."""
    return {
        "sonnet": settings.model_sonnet,
        "haiku": settings.model_haiku,
    }


MODEL_MAP: dict[str, str] = get_model_map()
