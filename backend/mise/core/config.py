from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    extraction_model: str = "gpt-4o-mini"
    annotation_model: str = "gpt-4o"
    llm_temperature: float = 0.2
    llm_timeout: float = 120.0

    fetch_timeout: float = 15.0

    # Token budgets for the assembled page context and the extraction prompt
    context_max_tokens: int = 5000
    extraction_max_tokens: int = 4000

    store_path: Optional[str] = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model_config = {
        "env_file": ".env",
        "env_prefix": "",
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
