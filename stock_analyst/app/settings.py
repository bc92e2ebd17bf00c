from functools import lru_cache
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


# OpenAI-compatible chat-completions endpoints offered as presets
PLATFORMS: Dict[str, Dict[str, str]] = {
    "deepseek": {
        "name": "DeepSeek",
        "url": "https://api.deepseek.com/v1/chat/completions",
        "model": "deepseek-chat",
    },
    "qwen": {
        "name": "Qwen",
        "url": "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions",
        "model": "qwen-plus",
    },
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Credentials are normally supplied per request; these only feed the CLI defaults
    api_key: str | None = None
    platform: str = "deepseek"
    api_url: str | None = None
    model_name: str | None = None

    temperature: float = 0.7
    analysis_max_tokens: int = 4096
    chat_max_tokens: int = 2048

    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float | None = 120.0  # None waits on a silent upstream forever

    quote_url: str = "https://push2.eastmoney.com/api/qt/stock/get"
    quote_timeout: float = 10.0

    history_db_url: str = "sqlite:///history.db"
    history_limit: int = 50

    server_url: str = "http://localhost:3000"
    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: str = "static"
    log_level: str = "INFO"

    def default_api_url(self) -> str:
        return self.api_url or PLATFORMS.get(self.platform, PLATFORMS["deepseek"])["url"]

    def default_model(self) -> str:
        return self.model_name or PLATFORMS.get(self.platform, PLATFORMS["deepseek"])["model"]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
