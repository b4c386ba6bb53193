"""
Configuration Management

Centralized runtime settings using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
Pipeline policy (thresholds, timeouts, truncation limits) lives in
config/pipeline.yaml and is loaded by jobmail.core.ai.config_loader.
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field(
        "sqlite:///jobmail.db",
        description="SQLAlchemy URL for pipeline state (sqlite or postgresql)"
    )
    database_echo: bool = Field(False, description="Echo SQL statements (debugging)")

    # ============================================================
    # Local Model Configuration
    # ============================================================
    ollama_base_url: str = Field(
        "http://localhost:11434",
        description="Base URL of the local model server (Ollama compatible)"
    )
    classify_model: str = Field("llama3.2:1b", description="Local model for classify/match stages")
    extract_model: str = Field("llama3.2:3b", description="Local model for the extract stage")
    model_enabled: bool = Field(True, description="Disable to run the pipeline with rule fallbacks only")

    # ============================================================
    # Pipeline Configuration
    # ============================================================
    pipeline_config_path: Optional[str] = Field(
        None,
        description="Path to pipeline.yaml (defaults to jobmail/core/ai/config/pipeline.yaml)"
    )
    preclassifier_model_path: Optional[str] = Field(
        None,
        description="Path to a trained preclassifier joblib bundle"
    )
    default_account: str = Field("default", description="Account scope used when none is given")
    truncating_sender_domains: str = Field(
        "",
        description="Extra comma-separated sender domains whose summary payloads truncate"
    )

    # ============================================================
    # Logging
    # ============================================================
    log_level: str = Field("INFO", description="Logging level")

    @property
    def truncating_sender_domains_list(self) -> List[str]:
        """Parse extra truncating sender domains into list."""
        if not self.truncating_sender_domains:
            return []
        return [d.strip().lower() for d in self.truncating_sender_domains.split(",") if d.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
