# ollama_proxy/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Union

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_empty=True, extra="ignore", populate_by_name=True
    )

    app_env: str = "dev"
    app_name: str = "Ollama Chat Proxy"
    app_host: str = "127.0.0.1"
    app_port: int = 3001

    log_level: str = "INFO"
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")  # "json"|"plain"

    # Upstream Ollama server
    ollama_base_url: Union[AnyUrl, str] = Field(
        default="http://127.0.0.1:11434", validation_alias="OLLAMA_BASE_URL"
    )
    default_model: str = Field(default="deepseek-r1:32b", validation_alias="DEFAULT_MODEL")
    ollama_api: Literal["chat", "generate"] = Field(default="chat", validation_alias="OLLAMA_API")
    generate_fallback: bool = Field(default=True, validation_alias="GENERATE_FALLBACK")
    upstream_connect_timeout_sec: float = Field(default=10.0, validation_alias="UPSTREAM_CONNECT_TIMEOUT_SEC")
    models_timeout_sec: float = Field(default=10.0, validation_alias="MODELS_TIMEOUT_SEC")

    # Generation / streaming
    keep_partial_on_cancel: bool = Field(default=True, validation_alias="KEEP_PARTIAL_ON_CANCEL")
    stream_queue_size: int = Field(default=64, validation_alias="STREAM_QUEUE_SIZE")

    # Electron renderer pages are served from file:// and send "Origin: null"
    cors_allowed_origins: str = Field(default="*", validation_alias="CORS_ALLOWED_ORIGINS")

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]

    @property
    def upstream_url(self) -> str:
        return str(self.ollama_base_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
