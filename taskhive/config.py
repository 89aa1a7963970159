from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Optional

DEFAULT_AGENT_CONCURRENCY = 5

class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "taskhive"
    debug: bool = False

    # Reasoning oracle
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "moonshotai/kimi-k2:free"
    oracle_temperature: float = 0.4
    oracle_max_tokens: int = 2000
    oracle_timeout: int = 60
    oracle_retry_attempts: int = 3

    # Supabase Database
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # Redis/Upstash
    redis_url: Optional[str] = None
    upstash_redis_url: Optional[str] = None

    # Spawn safeguards
    max_nesting_depth: int = Field(default=3, ge=0)
    max_subtasks_per_decomposition: int = Field(default=10, ge=1)
    max_total_subtasks_per_root: int = Field(default=60, ge=1)
    max_subtask_retries: int = Field(default=2, ge=0)

    # Per agent kind in-flight limits
    agent_concurrency_limits: Dict[str, int] = Field(
        default_factory=lambda: {
            "ResearcherAgent": 5,
            "WebResearcherAgent": 5,
            "CodeResearcherAgent": 5,
            "WriterAgent": 5,
            "AnalyzerAgent": 5,
            "CoordinatorAgent": 3,
        }
    )

    # Human interactions
    human_input_timeout_minutes: Optional[int] = 24 * 60

    # Worker pool
    worker_count: int = 4
    worker_idle_sleep: float = 1.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    def concurrency_limit_for(self, agent_kind: str) -> int:
        return self.agent_concurrency_limits.get(agent_kind, DEFAULT_AGENT_CONCURRENCY)

# Global settings instance
_settings: Optional[Settings] = None

def get_settings() -> Settings:
    """Get application settings"""
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings
