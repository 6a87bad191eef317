"""
Prospect Enrichment Service — Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./prospects.db",
        description="Async SQLAlchemy DB URL",
    )

    # AI provider: "github-models" or "anthropic"
    ai_provider: str = Field(
        default="github-models",
        description="AI provider: 'github-models' (OpenAI-compatible) or 'anthropic' (Claude)",
    )
    ai_token: str = Field(default="", description="Token for the OpenAI-compatible endpoint")
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude models")
    ai_api_url: str = Field(
        default="",
        description="Override AI API URL (auto-set per provider if blank)",
    )
    ai_model: str = Field(default="")

    @property
    def ai_effective_url(self) -> str:
        """Resolve API URL based on provider."""
        if self.ai_api_url:
            return self.ai_api_url
        if self.ai_provider == "anthropic":
            return "https://api.anthropic.com/v1/messages"
        return "https://models.inference.ai.azure.com/chat/completions"

    @property
    def ai_effective_model(self) -> str:
        """Resolve model name based on provider."""
        if self.ai_model:
            return self.ai_model
        if self.ai_provider == "anthropic":
            return "claude-sonnet-4-20250514"
        return "gpt-4o-mini"

    @property
    def ai_auth_token(self) -> str:
        """Token for AI API calls — provider-specific."""
        if self.ai_provider == "anthropic":
            return self.anthropic_api_key
        return self.ai_token

    # Telegram (alerts for aborted / stuck jobs)
    telegram_bot_token: str = Field(default="")
    telegram_chat_id: str = Field(default="")

    # Enrichment pipeline
    enrichment_max_retries: int = Field(default=3, description="Failed attempts before review")
    enrichment_batch_size: int = Field(default=15, description="Default candidates per batch")
    enrichment_concurrency: int = Field(default=3, description="Workers running at once")
    max_contacts_per_domain: int = Field(default=25)

    # Lock / sweep thresholds
    lock_timeout_minutes: int = Field(
        default=10, description="Lock age after which acquire() treats it as absent"
    )
    stuck_lock_minutes: int = Field(
        default=15, description="Lock age after which the sweep force-releases it"
    )
    stuck_job_minutes: int = Field(
        default=30, description="Idle minutes before a running job is failed"
    )
    rate_limit_backoff_seconds: int = Field(
        default=300, description="Dispatch pause after a provider 429"
    )

    # Schedulers (seconds, 0 disables)
    auto_enrichment_interval: int = Field(default=900)
    sweep_interval: int = Field(default=300)

    # Website scraping
    scrape_timeout: int = Field(default=10)
    scrape_user_agent: str = Field(default="Mozilla/5.0 ProspectEnrichmentBot/1.0")
    scrape_max_chars: int = Field(default=15000, description="Page text sent to the AI")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
