from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from chat_bridge.store.models import ModelSpec


@dataclass
class RuntimeEnv:
    anthropic_api_key: str | None
    openai_api_key: str | None


@dataclass
class AppConfig:
    host: str
    port: int
    db_path: str
    files_dir: str | None
    default_max_tokens: int
    title_generation_enabled: bool
    title_cache_ttl_seconds: float
    title_poll_delay_seconds: float
    title_timeout_seconds: float
    anthropic_title_model: str
    openai_title_model: str
    log_level: str
    log_consumers: list | None
    model_specs: list[ModelSpec] = field(default_factory=list)


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        host=str(config.get("Host", "127.0.0.1")),
        port=int(config.get("Port", 3080)),
        db_path=str(config.get("DbPath", ".chat_bridge/chat.db")),
        files_dir=str(config.get("FilesDir", "")).strip() or None,
        default_max_tokens=int(config.get("DefaultMaxTokens", 4000)),
        title_generation_enabled=_to_bool(config.get("TitleGenerationEnabled", True), default=True),
        title_cache_ttl_seconds=float(config.get("TitleCacheTtlSeconds", 120)),
        title_poll_delay_seconds=float(config.get("TitlePollDelaySeconds", 2.5)),
        title_timeout_seconds=float(config.get("TitleTimeoutSeconds", 15)),
        anthropic_title_model=config.get("AnthropicTitleModel", "claude-3-5-haiku-20241022"),
        openai_title_model=config.get("OpenAITitleModel", "gpt-4.1-nano"),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
        model_specs=[ModelSpec.from_config(raw) for raw in config.get("ModelSpecs", [])],
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
        openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
    )
