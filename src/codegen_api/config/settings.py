"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "codegen-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    # Per gateway call. Independent of task_timeout_s, which only affects reported state.
    llm_timeout_s: float = Field(default=1800.0, ge=1.0)
    llm_max_tokens: int = Field(default=32768, ge=1)
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    modify_temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    max_loops: int = Field(default=20, ge=1)
    round_delay_s: float = Field(default=0.0, ge=0.0)
    use_continuation: bool = True
    task_timeout_s: float = Field(default=600.0, gt=0.0)
    task_retention_s: float = Field(default=3600.0, gt=0.0)
    sweep_interval_s: float = Field(default=60.0, gt=0.0)
    accept_partial_results: bool = True

    model_config = SettingsConfigDict(
        env_prefix="CODEGEN_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_llm_api_key(self) -> str:
        return self.llm_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
