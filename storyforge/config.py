"""Runtime configuration from the environment.

Values are read from STORYFORGE_* environment variables, optionally seeded
from a .env file:

    STORYFORGE_DATA_DIR=data
    STORYFORGE_PROVIDER_URL=http://localhost:5001
    STORYFORGE_PROVIDER_FORMAT=koboldcpp     # or openai
    STORYFORGE_LLM_TIMEOUT=120
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from storyforge.llm import HttpLLM, ProviderFormat
from storyforge.retry import RetryPolicy

ENV_PREFIX = "STORYFORGE_"
DEFAULT_DATA_DIR = Path("data")


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: ProviderFormat = "koboldcpp"
    model: str = ""
    max_tokens: int = Field(default=8192, gt=0)
    llm_timeout: float = Field(default=120.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    timeout_floor: float = Field(default=0.0, ge=0)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=10.0, ge=0)
    context_ttl: float = Field(default=3600.0, gt=0)
    sweep_interval: float = Field(default=600.0, ge=0)
    graph_timeout: float = Field(default=30.0, gt=0)


def load_settings(env_file: Path | str | None = None, **overrides: Any) -> Settings:
    """Build Settings from the environment.

    If `env_file` is given it is loaded first; variables already set in the
    process environment win. Keyword overrides win over both.
    """
    if env_file is not None:
        load_dotenv(env_file)

    values: dict[str, Any] = {}
    for name in Settings.model_fields:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    values.update(overrides)
    return Settings.model_validate(values)


def build_llm(settings: Settings) -> HttpLLM:
    return HttpLLM(
        provider_url=settings.provider_url,
        api_key=settings.api_key,
        provider_format=settings.provider_format,
        model=settings.model,
        max_tokens=settings.max_tokens,
        timeout=max(settings.llm_timeout, settings.timeout_floor),
    )


def retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        timeout=settings.llm_timeout,
        max_attempts=settings.max_attempts,
        base_delay=settings.backoff_base,
        max_delay=settings.backoff_max,
        timeout_floor=settings.timeout_floor,
    )
