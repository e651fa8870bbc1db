"""Configuration utilities for the browser orchestrator."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


ENV_FILES = [
    Path.cwd() / ".env.local",
    Path.cwd() / ".env",
]


def load_env() -> None:
    """Load .env files in priority order."""
    for env_file in ENV_FILES:
        if env_file.exists():
            load_dotenv(env_file, override=False)


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value or None


class OrchestratorSettings(BaseModel):
    """Runtime configuration for the orchestrator and its HTTP surface."""

    api_host: str = Field(default_factory=lambda: os.getenv("API_HOST", "0.0.0.0"))
    api_port: int = Field(default_factory=lambda: int(os.getenv("API_PORT", "5000")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    mcp_server_url: str = Field(default_factory=lambda: os.getenv("MCP_SERVER_URL", "http://localhost:3001"))
    mcp_api_key: Optional[str] = Field(default_factory=lambda: _optional_env("MCP_API_KEY"))
    openai_api_key: Optional[str] = Field(default_factory=lambda: _optional_env("OPENAI_API_KEY"))
    openai_model: str = Field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o"))
    max_completion_tokens: int = Field(default_factory=lambda: int(os.getenv("MAX_COMPLETION_TOKENS", "4096")))
    max_iterations: int = Field(default_factory=lambda: int(os.getenv("MAX_ITERATIONS", "20")))
    call_timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("CALL_TIMEOUT_SECONDS", "120")))
    snapshot_fetch_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("SNAPSHOT_FETCH_TIMEOUT_SECONDS", "10"))
    )
    trace_log_path: Path = Field(
        default_factory=lambda: Path(os.getenv("TRACE_LOG_PATH", "logs/orchestrator-traces.jsonl"))
    )
    trace_db_path: Optional[Path] = Field(
        default_factory=lambda: Path(os.environ["TRACE_DB_PATH"]) if os.getenv("TRACE_DB_PATH") else None
    )


@lru_cache(maxsize=1)
def get_settings() -> OrchestratorSettings:
    """Return cached orchestrator settings."""
    load_env()
    settings = OrchestratorSettings()
    settings.trace_log_path.parent.mkdir(parents=True, exist_ok=True)
    if settings.trace_db_path is not None:
        settings.trace_db_path.parent.mkdir(parents=True, exist_ok=True)
    return settings


def settings_dict() -> dict[str, Any]:
    """Settings for logging, with secrets masked."""
    data = get_settings().model_dump(mode="json")
    for key in ("mcp_api_key", "openai_api_key"):
        if data.get(key):
            data[key] = "***"
    return data
