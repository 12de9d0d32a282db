"""
Configuration lookup for the enrichment service.

Values resolve from three sources, highest priority first:
    override  explicit value passed by the caller (app factory, CLI, tests)
    env       process environment, including a local .env file
    default   DEFAULTS below
"""

import json
import os
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

SECRET_KEYS = {"OPENAI_API_KEY"}


class ConfigManager:
    """Typed access to settings with override > env > default precedence."""

    DEFAULTS = {
        "DATA_DIR": "server_data",
        "API_BASE_URL": "http://localhost:5001",
        "LLM_API_BASE_URL": "",
        "OPENAI_API_KEY": "",
        "INSIGHTS_MODEL": "gpt-4o-mini",
        "EMBEDDING_MODEL": "text-embedding-3-small",
        "EMBEDDING_DIMENSIONS": "1536",
        "WHISPER_MODEL": "base",
        "TRANSCRIPTION_BACKEND": "local",
        "MAX_WORKERS": "2",
        "CAPABILITY_TIMEOUT_SECONDS": "120",
        "CAPABILITY_MAX_RETRIES": "0",
        "CAPABILITY_RETRY_BACKOFF_SECONDS": "1.0",
        "CACHE_MAX_AGE_DAYS": "30",
        "SEARCH_DEFAULT_THRESHOLD": "0.7",
        "SEARCH_DEFAULT_LIMIT": "20",
        "SEARCH_MAX_LIMIT": "100",
        "QUERY_CACHE_SIZE": "1000",
        "QA_GRADE_SCALE": "",
        "POLL_INTERVAL_SECONDS": "3",
        "BULK_DELAY_SECONDS": "1.0",
        "LOG_LEVEL": "INFO",
    }

    @staticmethod
    def resolve(key: str, override: Optional[Any] = None) -> Tuple[Any, str]:
        """
        Find the effective value for a key and where it came from.

        Empty strings count as unset at every level, so an empty override or
        an empty variable in .env falls through to the next source.

        Returns:
            Tuple of (value, source) with source one of 'override', 'env', 'default'
        """
        if override not in (None, ""):
            return override, "override"

        env_value = os.getenv(key)
        if env_value:
            return env_value, "env"

        return ConfigManager.DEFAULTS.get(key, ""), "default"

    @staticmethod
    def get(key: str, override: Optional[Any] = None) -> Any:
        return ConfigManager.resolve(key, override)[0]

    @staticmethod
    def get_int(key: str, override: Optional[Any] = None) -> int:
        return int(ConfigManager.get(key, override))

    @staticmethod
    def get_float(key: str, override: Optional[Any] = None) -> float:
        return float(ConfigManager.get(key, override))

    @staticmethod
    def get_json(key: str, override: Optional[Any] = None) -> Optional[Any]:
        """Get a JSON-encoded value; returns None when unset."""
        value = ConfigManager.get(key, override)
        if value in (None, ""):
            return None
        if isinstance(value, str):
            return json.loads(value)
        return value

    @staticmethod
    def snapshot() -> Dict[str, Dict[str, Any]]:
        """Effective settings with their sources, secrets masked."""
        settings = {}
        for key in sorted(ConfigManager.DEFAULTS):
            value, source = ConfigManager.resolve(key)
            if key in SECRET_KEYS:
                value = "***" if value else ""
            settings[key] = {"value": value, "source": source}
        return settings
