"""
Centralized application configuration.

All settings are loaded from environment variables via pydantic-settings.
``GEMINI_API_KEY`` is the only value without a usable default.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_INSTRUCTION = (
    "あなたは麻雀の専門家です。麻雀に関する質問に対して、正確で分かりやすい回答を"
    "日本語で提供してください。戦術、ルール、確率計算など、麻雀に関するあらゆる側面"
    "について回答できます。"
)


class Settings(BaseSettings):
    """Application-wide settings sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Service identity ──────────────────────────────────────────────
    service_name: str = Field(default="mahjong-ai", description="Logical service name")
    server_version: str = Field(
        default="1.0.0",
        description="Reported in every response metadata block",
    )

    # ── Gemini (generative-language provider) ────────────────────────
    gemini_api_key: str = Field(default="", description="Google AI Studio API key")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Base URL of the Generative Language REST API",
    )
    gemini_model: str = Field(default="gemini-2.5-flash")
    gemini_system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION)
    llm_timeout_seconds: float = Field(
        default=120.0,
        description="HTTP read timeout for a single Gemini call",
    )
    stream_buffer_size: int = Field(
        default=8,
        ge=1,
        description="Events buffered between a stream producer and its consumer",
    )

    # ── MLflow (observability) ────────────────────────────────────────
    mlflow_enabled: bool = Field(default=False)
    mlflow_tracking_uri: str = Field(
        default="http://mlflow:5000",
        description="MLflow tracking server URI",
    )
    mlflow_experiment_name: str = Field(default="mahjong-ai-generations")

    # ── Transport ─────────────────────────────────────────────────────
    rest_host: str = Field(default="0.0.0.0")
    rest_port: int = Field(default=8081)
    grpc_host: str = Field(default="0.0.0.0")
    grpc_port: int = Field(default=8080)
    grpc_max_workers: int = Field(default=10)
    grpc_reflection: bool = Field(default=True)
    grpc_shutdown_grace_seconds: float = Field(default=10.0, ge=0.0)
    cors_allow_origins: str = Field(
        default="*",
        description="Comma-separated origins allowed by the HTTP transport",
    )

    # ── Logging ───────────────────────────────────────────────────────
    log_level: str = Field(default="info")
    log_json: bool = Field(default=True)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton accessor; import and call ``get_settings()`` anywhere."""
    return Settings()
