"""Application configuration using Pydantic settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./vetting.db"

    # App Settings
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = ""  # Empty: ./logs
    third_party_log_level: str = "WARNING"  # httpx, openai and google SDK loggers
    app_host: str = "0.0.0.0"
    app_port: int = 8001

    # ==========================================================================
    # Classifier (LLM) Configuration
    # ==========================================================================
    # Provider selection: "gemini", "openai", "groq", "keyword" or "none"
    vetting_provider: str = "gemini"

    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    groq_base_url: str = "https://api.groq.com/openai/v1"

    llm_temperature: float = 0.3  # Lower = more deterministic
    llm_timeout_seconds: float = 30.0
    llm_max_attempts: int = 3  # Attempts per model on rate limit
    llm_default_retry_delay_seconds: float = 10.0  # Used when provider sends no hint
    llm_max_research_snippets: int = 5  # Citation snippets embedded in the prompt

    # ==========================================================================
    # Safety-Score Lookup (EWG Skin Deep)
    # ==========================================================================
    ewg_lookup_enabled: bool = True
    ewg_base_url: str = "https://www.ewg.org/skindeep"
    ewg_request_timeout_seconds: float = 15.0

    # ==========================================================================
    # Citation Search (Google Custom Search)
    # ==========================================================================
    google_api_key: str = ""
    google_cx_id: str = ""
    google_search_url: str = "https://www.googleapis.com/customsearch/v1"
    research_max_consecutive_errors: int = 3  # Circuit breaker threshold
    research_min_request_interval_seconds: float = 0.1
    research_request_timeout_seconds: float = 10.0

    # ==========================================================================
    # Analysis Cache & Batch Pacing
    # ==========================================================================
    analysis_refresh_days: int = 30  # Re-analyze after this many days
    vetting_item_delay_seconds: float = 2.0  # Pause between ingredients in a batch

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
