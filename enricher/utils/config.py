"""Process-wide settings.

Built once at startup (``Settings()``) and handed to the components that need
it. Pipeline code never reads the environment on its own.
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # serving
    host: str = '0.0.0.0'
    port: int = 8000
    environment: str = 'development'
    log_level: str = 'INFO'
    cors_origin: str = '*'

    # provider selection
    llm_provider: Optional[str] = None
    llm_fallback_providers: Optional[str] = None

    # credentials
    gemini_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    together_api_key: Optional[str] = None
    llm_api_key: Optional[str] = None

    # models
    gemini_model: Optional[str] = None
    openai_model: Optional[str] = None
    together_model: Optional[str] = None
    llm_model: Optional[str] = None

    # endpoints
    openai_base_url: Optional[str] = None
    together_base_url: Optional[str] = None
    llm_base_url: Optional[str] = None

    # retry / pacing
    llm_max_retries: int = 3
    llm_timeout_ms: int = 120000
    llm_retry_base_delay_ms: int = 2000
    llm_request_delay_ms: int = 500
    enrich_batch_size: int = 5

    # flashcard store
    ankiconnect_url: str = 'http://localhost:8765'

    # checkpoints
    checkpoint_backend: str = 'file'
    checkpoint_file: str = 'enrich-progress.json'
    redis_url: Optional[str] = None
    checkpoint_ttl_seconds: int = 7 * 24 * 3600
    redis_required_for_ready: bool = False
