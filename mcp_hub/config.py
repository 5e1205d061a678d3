"""
Hub configuration.

Settings are plain pydantic models so they can be built in code (tests,
embedding) or loaded from a JSON file with environment overrides:

    config = load_config("hub.json")
    hub = build_hub(config)

Environment variables (a .env file is honoured):
    MCP_HUB_MODEL, MCP_HUB_FAST_MODEL, MCP_HUB_BASE_URL, MCP_HUB_API_KEY,
    MCP_HUB_CALL_TIMEOUT, MCP_HUB_MAX_STEPS
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ServerConfig(BaseModel):
    """How to launch one tool server."""

    name: str = Field(..., description="Logical server name, unique within the pool.")
    command: list[str] = Field(..., min_length=1)
    env: dict[str, str] | None = None
    cwd: str | None = None
    ready_pattern: str | None = Field(
        default=None,
        description="Regex matched against stderr lines; tools/list waits for it.",
    )
    enabled: bool = True


class ModelConfig(BaseModel):
    """OpenAI-compatible endpoint serving the full and fast models."""

    base_url: str = "http://localhost:11434/v1"
    api_key: str = "ollama"
    model: str = "qwen2.5:latest"
    fast_model: str | None = None
    temperature: float = 0.2
    max_tokens: int = 4000
    request_timeout: float = 120.0


class ToolGuidance(BaseModel):
    """Per-tool hints and classes applied on top of what servers advertise."""

    usage_hints: dict[str, str] = Field(default_factory=dict)
    argument_hints: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="{tool: {param: hint}}; the tool key '*' applies to every tool.",
    )
    auto_tools: list[str] = Field(default_factory=list)
    fast_tools: list[str] = Field(default_factory=list)
    blacklist: list[str] = Field(default_factory=list)


class PlanSettings(BaseModel):
    max_steps: int = Field(default=10, ge=1)
    max_step_attempts: int = Field(default=5, ge=1)
    max_iterations: int = Field(default=30, ge=1)
    result_preview_chars: int = Field(default=4000, ge=100)
    temperature: float = 0.2
    max_tokens: int = 4000


class HubConfig(BaseModel):
    servers: list[ServerConfig] = Field(default_factory=list)
    model: ModelConfig = Field(default_factory=ModelConfig)
    guidance: ToolGuidance = Field(default_factory=ToolGuidance)
    plan: PlanSettings = Field(default_factory=PlanSettings)
    call_timeout: float = 30.0
    init_timeout: float = 60.0
    readiness_timeout: float = 300.0
    retry_backoff: float = 0.0
    project_root: str = "."
    prompts_file: str | None = None
    builtin_tools: bool = True


def load_config(
    path: str | Path | None = None,
    prompts_path: str | Path | None = None,
) -> HubConfig:
    """
    Load hub configuration.

    Args:
        path: Optional JSON file. Missing keys fall back to defaults.
        prompts_path: Optional prompt overrides file; wins over the
            file's own prompts_file.

    Returns:
        The validated HubConfig with environment overrides applied.
    """
    load_dotenv()

    data: dict = {}
    if path is not None:
        path = Path(path)
        data = json.loads(path.read_text(encoding="utf-8"))
        logger.info(f"Loaded configuration from {path}")
        # Relative prompt files resolve against the config file's directory.
        prompts_file = data.get("prompts_file")
        if prompts_file and not Path(prompts_file).is_absolute():
            data["prompts_file"] = str(path.parent / prompts_file)

    config = HubConfig.model_validate(data)
    if prompts_path is not None:
        config.prompts_file = str(prompts_path)
    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: HubConfig) -> None:
    if value := os.getenv("MCP_HUB_MODEL"):
        config.model.model = value
    if value := os.getenv("MCP_HUB_FAST_MODEL"):
        config.model.fast_model = value
    if value := os.getenv("MCP_HUB_BASE_URL"):
        config.model.base_url = value
    if value := os.getenv("MCP_HUB_API_KEY"):
        config.model.api_key = value
    if value := os.getenv("MCP_HUB_CALL_TIMEOUT"):
        config.call_timeout = float(value)
    if value := os.getenv("MCP_HUB_MAX_STEPS"):
        config.plan.max_steps = int(value)
