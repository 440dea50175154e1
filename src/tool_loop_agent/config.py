"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from tool_loop_agent.core.types import BusyPolicy

DEFAULT_SYSTEM_PROMPT = (
    "You are an intelligent AI assistant with access to tools. Use the tools when "
    "helpful to answer the user's questions. Be concise and helpful."
)


class AgentDefaults(BaseModel):
    model: str = "claude-sonnet-4-20250514"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    max_steps: int = Field(default=10, ge=1, le=50)
    tools: list[str] = Field(default_factory=list)  # empty = every registered tool
    tool_timeout: float = Field(default=30.0, gt=0)
    turn_timeout: float = Field(default=60.0, gt=0)
    busy_policy: BusyPolicy = BusyPolicy.QUEUE


class TurnOverrides(BaseModel):
    """Per-request overrides of the agent defaults."""

    model: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    max_steps: Optional[int] = Field(default=None, ge=1, le=50)
    tools: Optional[list[str]] = None


class AnthropicConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    max_retries: int = 3
    timeout: int = 120


class StorageConfig(BaseModel):
    db_path: str = "./data/tool_loop_agent.db"


class ToolsConfig(BaseModel):
    weather_base_url: str = "https://api.open-meteo.com/v1/forecast"
    http_timeout: float = 10.0
    search_results: int = 5


class AppConfig(BaseModel):
    log_level: str = "INFO"
    data_dir: str = "./data"
    default_user: str = "local"
    agent: AgentDefaults = Field(default_factory=AgentDefaults)
    anthropic: Optional[AnthropicConfig] = None
    storage: StorageConfig = Field(default_factory=StorageConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation.

    A missing config file is not an error: defaults apply, and the Anthropic
    section is filled from ``ANTHROPIC_API_KEY`` when that variable is set.
    """
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    data: dict = {}
    if config_file.exists():
        raw_text = config_file.read_text(encoding="utf-8")

        # First pass: extract data_dir for self-referencing
        raw_data = yaml.safe_load(raw_text) or {}
        data_dir = _interpolate_env_vars(raw_data.get("data_dir", "./data"))

        # Second pass: interpolate all env vars
        interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
        data = yaml.safe_load(interpolated) or {}

    if "anthropic" not in data and os.environ.get("ANTHROPIC_API_KEY"):
        data["anthropic"] = {"api_key": os.environ["ANTHROPIC_API_KEY"]}

    return AppConfig(**data)
