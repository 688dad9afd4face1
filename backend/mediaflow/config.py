"""
Engine configuration.

Read from the environment (and a local .env file when present). Values that
must be integers fall back to their defaults when unparseable.
"""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        parsed = int(raw)
        if parsed <= 0:
            return default
        return parsed
    except ValueError:
        return default


class EngineConfig:
    """Settings for the execution engine and its HTTP collaborators"""

    # Editor routes the engine posts to
    GENERATE_API_URL: str = os.getenv(
        "MEDIAFLOW_GENERATE_URL", "http://localhost:3000/api/generate"
    )
    LLM_API_URL: str = os.getenv("MEDIAFLOW_LLM_URL", "http://localhost:3000/api/llm")
    SAVE_GENERATION_URL: Optional[str] = os.getenv("MEDIAFLOW_SAVE_GENERATION_URL")
    GENERATIONS_PATH: Optional[str] = os.getenv("MEDIAFLOW_GENERATIONS_PATH")

    # Concurrency bounds for a single run
    MIN_CONCURRENT_CALLS: int = 1
    MAX_CONCURRENT_CALLS: int = 10
    DEFAULT_CONCURRENT_CALLS: int = 3

    # Provider API keys, forwarded as request headers
    PROVIDER_KEY_ENV: dict = {
        "gemini": "GEMINI_API_KEY",
        "replicate": "REPLICATE_API_KEY",
        "fal": "FAL_API_KEY",
        "kie": "KIE_API_KEY",
        "wavespeed": "WAVESPEED_API_KEY",
        "openai": "OPENAI_API_KEY",
    }

    @classmethod
    def clamp_concurrency(cls, value: int) -> int:
        return max(cls.MIN_CONCURRENT_CALLS, min(cls.MAX_CONCURRENT_CALLS, int(value)))

    @classmethod
    def default_max_concurrent_calls(cls) -> int:
        return cls.clamp_concurrency(
            _int_from_env("MEDIAFLOW_MAX_CONCURRENT_CALLS", cls.DEFAULT_CONCURRENT_CALLS)
        )

    @classmethod
    def history_limit(cls) -> int:
        """Maximum number of entries kept in a generator's output history."""
        return _int_from_env("MEDIAFLOW_HISTORY_LIMIT", 50)

    @classmethod
    def request_timeout_seconds(cls) -> float:
        raw = os.getenv("MEDIAFLOW_REQUEST_TIMEOUT_SECONDS", "600")
        try:
            parsed = float(raw)
            return parsed if parsed > 0 else 600.0
        except ValueError:
            return 600.0

    @classmethod
    def provider_api_keys(cls) -> dict[str, str]:
        """Provider name -> API key, for providers that have one configured."""
        keys: dict[str, str] = {}
        for provider, env_name in cls.PROVIDER_KEY_ENV.items():
            value = os.getenv(env_name)
            if value:
                keys[provider] = value
        return keys
