"""
Tool Integration Layer.

Tool configurations, the handler registry, parameter validation and the
dispatcher that executes the tools a model asks for. External tool servers
(e.g. MCP) plug in through ToolAdapter.
"""

from toolflow.tools.dispatcher import ToolDispatcher
from toolflow.tools.models import (
    DetectionTool,
    ExecutableTool,
    ExecutionContext,
    ToolConfiguration,
    ToolConfigurationError,
    ToolExecutionResult,
)
from toolflow.tools.registry import ToolRegistry

__all__ = [
    "DetectionTool",
    "ExecutableTool",
    "ExecutionContext",
    "ToolConfiguration",
    "ToolConfigurationError",
    "ToolDispatcher",
    "ToolExecutionResult",
    "ToolRegistry",
]
