"""
Tool registry: resolves tool names and handler references.

Handlers are registered explicitly at startup, keyed by the scenario they
belong to and the handler reference their tool specification declares:

    registry = ToolRegistry()

    @registry.handler("fraud-detection", "tools/freezeAccount.freezeAccount")
    async def freeze_account(parameters, context):
        ...

Nothing is imported by path at dispatch time.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from toolflow.config.logging import get_logger
from toolflow.tools.models import (
    DetectionTool,
    ExecutableTool,
    ExecutionContext,
    ToolConfiguration,
)

logger = get_logger(__name__)

ToolHandler = Callable[[dict[str, Any], ExecutionContext], Any | Awaitable[Any]]


class ToolRegistry:
    """Static mapping from (scenario id, handler reference) to handler functions."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], ToolHandler] = {}

    def register(self, scenario_id: str, reference: str, func: ToolHandler) -> None:
        """
        Register a handler function.

        Raises:
            ValueError: If the reference is already registered for the scenario
        """
        key = (scenario_id, reference)
        if key in self._handlers:
            raise ValueError(f"Handler already registered for {scenario_id}:{reference}")
        self._handlers[key] = func
        logger.debug(f"Registered handler {scenario_id}:{reference}")

    def handler(self, scenario_id: str, reference: str) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of register()."""

        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(scenario_id, reference, func)
            return func

        return decorator

    def unregister(self, scenario_id: str, reference: str) -> None:
        self._handlers.pop((scenario_id, reference), None)

    def get_handler(self, scenario_id: str, reference: str) -> ToolHandler | None:
        return self._handlers.get((scenario_id, reference))

    def has_handler(self, scenario_id: str, reference: str) -> bool:
        return (scenario_id, reference) in self._handlers

    @staticmethod
    def resolve(
        tool_name: str, configuration: ToolConfiguration | None
    ) -> DetectionTool | ExecutableTool | None:
        """Look up a tool specification by name; None when it is not configured."""
        if configuration is None:
            return None
        return configuration.get_tool(tool_name)

    def check_configuration(
        self, configuration: ToolConfiguration, scenario_id: str | None = None
    ) -> list[str]:
        """
        List executable tools whose handler has not been registered.

        Args:
            configuration: Tool configuration to check
            scenario_id: Scenario to check against (default: the configuration's own)

        Returns:
            Names of tools that would fail to dispatch
        """
        scenario = scenario_id or configuration.scenario()
        missing = []
        for tool in configuration.tools:
            if not isinstance(tool, ExecutableTool):
                continue
            if scenario is None or not self.has_handler(scenario, tool.handler):
                missing.append(tool.name)
        return missing

    def __len__(self) -> int:
        return len(self._handlers)
