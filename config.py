import os
from dataclasses import dataclass
from typing import Optional
from pathlib import Path
import yaml
from dotenv import load_dotenv

from errors import ConfigurationError

LLM_PROVIDERS = ("gemini", "anthropic")

DEFAULT_MODELS = {
    "gemini": "gemini-2.0-flash",
    "anthropic": "claude-3-7-sonnet-20250219",
}

@dataclass
class APIConfig:
    slack_bot_token: str
    llm_api_key: str
    llm_provider: str = "gemini"
    llm_model: str = DEFAULT_MODELS["gemini"]
    slack_client_id: Optional[str] = None
    max_retries: int = 3
    retry_delay: float = 30.0
    page_limit: int = 1000
    page_delay: float = 1.0
    history_days: int = 14
    history_limit: int = 200

@dataclass
class CacheConfig:
    cache_file: Path
    ttl: int = 3600

@dataclass
class AppConfig:
    api: APIConfig
    cache: CacheConfig
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 5000
    metrics_port: int = 8000
    timezone: str = "UTC"


def _read_yaml(config_path: Path) -> dict:
    if not config_path.exists():
        return {}
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")
    return data


def _setting(name: str, section: dict, key: str, default):
    """Environment variable first, then the YAML section, then the default."""
    value = os.getenv(name)
    if value is not None and value != "":
        return value
    return section.get(key, default)


def validate_slack_token(token: Optional[str]) -> str:
    if not token:
        raise ConfigurationError(
            "SLACK_BOT_TOKEN is not set",
            steps=["Create a Slack app bot token and export it as SLACK_BOT_TOKEN"],
        )
    if not token.startswith("xoxb-"):
        raise ConfigurationError(
            "SLACK_BOT_TOKEN must be a bot token (xoxb-...)",
            steps=["Copy the Bot User OAuth Token from the app's OAuth & Permissions page"],
        )
    return token


def resolve_llm_provider(provider: Optional[str]) -> str:
    provider = (provider or "gemini").strip().lower()
    if provider not in LLM_PROVIDERS:
        raise ConfigurationError(
            f"Invalid LLM_PROVIDER {provider!r}. Expected one of: {', '.join(LLM_PROVIDERS)}"
        )
    return provider


def load_config(config_path: Path = Path("config.yaml")) -> AppConfig:
    load_dotenv()

    # Load YAML config if exists; environment variables take precedence
    config_data = _read_yaml(config_path)
    api_section = config_data.get("api") or {}
    cache_section = config_data.get("cache") or {}
    app_section = config_data.get("app") or {}

    slack_token = validate_slack_token(os.getenv("SLACK_BOT_TOKEN"))
    provider = resolve_llm_provider(_setting("LLM_PROVIDER", api_section, "llm_provider", "gemini"))
    key_var = "GOOGLE_API_KEY" if provider == "gemini" else "ANTHROPIC_API_KEY"
    llm_api_key = os.getenv(key_var)
    if not llm_api_key:
        raise ConfigurationError(
            f"{key_var} is not set",
            steps=[f"Export {key_var} or switch LLM_PROVIDER"],
        )

    try:
        return AppConfig(
            api=APIConfig(
                slack_bot_token=slack_token,
                llm_api_key=llm_api_key,
                llm_provider=provider,
                llm_model=_setting("LLM_MODEL", api_section, "llm_model", DEFAULT_MODELS[provider]),
                slack_client_id=_setting("SLACK_CLIENT_ID", api_section, "slack_client_id", None),
                max_retries=int(_setting("MAX_RETRIES", api_section, "max_retries", 3)),
                retry_delay=float(_setting("RETRY_DELAY", api_section, "retry_delay", 30)),
                page_limit=int(_setting("PAGE_LIMIT", api_section, "page_limit", 1000)),
                page_delay=float(_setting("PAGE_DELAY", api_section, "page_delay", 1)),
                history_days=int(_setting("HISTORY_DAYS", api_section, "history_days", 14)),
                history_limit=int(_setting("HISTORY_LIMIT", api_section, "history_limit", 200)),
            ),
            cache=CacheConfig(
                cache_file=Path(_setting("CACHE_FILE", cache_section, "cache_file", ".cache/channels.json")),
                ttl=int(_setting("CACHE_TTL", cache_section, "ttl", 3600)),
            ),
            log_level=_setting("LOG_LEVEL", app_section, "log_level", "INFO"),
            host=_setting("HOST", app_section, "host", "127.0.0.1"),
            port=int(_setting("PORT", app_section, "port", 5000)),
            metrics_port=int(_setting("METRICS_PORT", app_section, "metrics_port", 8000)),
            timezone=_setting("TIMEZONE", app_section, "timezone", "UTC"),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e
