"""
Application settings and configuration management.

Uses Pydantic Settings for validation and environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """LLM API configuration."""

    model: str = Field(
        default="anthropic/claude-3-5-sonnet-20241022",
        description="LiteLLM model string, e.g. 'anthropic/claude-3-5-sonnet-20241022', "
                    "'openai/gpt-4o', 'bedrock/anthropic.claude-3-haiku-20240307-v1:0'. "
                    "Used when a run does not name a model explicitly.",
    )
    max_tokens: int = Field(default=4000, description="Maximum tokens in each model response")
    temperature: float = Field(default=0.7, description="Sampling temperature")
    api_key: str = Field(default="", description="API key for the model's provider")

    model_config = SettingsConfigDict(env_prefix="LLM_")


class OrchestratorSettings(BaseSettings):
    """Conversation loop and execution history configuration."""

    max_iterations: int = Field(
        default=10,
        ge=1,
        description="Default bound on model calls per execution",
    )
    parallel_tool_calls: bool = Field(
        default=False,
        description="Dispatch the tool-use blocks of one model turn concurrently. "
                    "Result ordering always follows the model's block order.",
    )
    history_max_age_seconds: int = Field(
        default=24 * 60 * 60,
        description="Finished executions older than this are evicted from memory",
    )
    history_max_count: int = Field(
        default=500,
        description="At most this many finished executions are kept in memory",
    )

    model_config = SettingsConfigDict(env_prefix="ORCHESTRATOR_")


class ToolSettings(BaseSettings):
    """Tool dispatch configuration."""

    timeout: float | None = Field(
        default=None,
        description="Per-call tool handler timeout in seconds. None means handlers "
                    "are responsible for their own timeouts.",
    )
    mcp_server_command: str | None = Field(
        default=None,
        description="Command that starts an MCP tool server over stdio (e.g. 'node'). "
                    "If set, the server's tools are registered as handlers for `run`.",
    )
    mcp_server_args: list[str] = Field(
        default_factory=list,
        description="Arguments for the MCP server command. "
                    "Set via TOOLS__MCP_SERVER_ARGS='[\"server/index.js\"]'",
    )

    model_config = SettingsConfigDict(env_prefix="TOOL_")


class WorkflowSettings(BaseSettings):
    """Workflow history storage and retention configuration."""

    store_backend: Literal["memory", "json"] = Field(
        default="json", description="Durable workflow store implementation"
    )
    store_path: str = Field(
        default="data/workflows",
        description="Directory for the json workflow store",
    )
    retention_max_age_days: int = Field(
        default=7, description="Stored workflows older than this are deleted on cleanup"
    )
    retention_max_count: int = Field(
        default=1000, description="At most this many stored workflows survive cleanup"
    )

    model_config = SettingsConfigDict(env_prefix="WORKFLOW_")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Sub-configurations
    llm: LLMSettings = Field(default_factory=LLMSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        env_file: Path to .env file (optional)

    Returns:
        Loaded settings instance
    """
    global _settings
    if env_file:
        _settings = Settings(_env_file=env_file)
    else:
        _settings = Settings()
    return _settings
