"""
Tool dispatcher: validates and executes one tool-use block.

The dispatcher is the error boundary between tool handlers and the
conversation loop. Every failure (unknown tool, missing scenario, invalid
parameters, missing handler, handler exception, timeout) comes back as a
ToolExecutionResult with ``success=False``; nothing raised by a handler
escapes ``execute()``.
"""

import asyncio
import inspect
from typing import Any

from toolflow.config.logging import get_logger
from toolflow.llm.models import ToolUseBlock
from toolflow.tools.models import (
    DetectionTool,
    ExecutionContext,
    ToolConfiguration,
    ToolExecutionResult,
)
from toolflow.tools.registry import ToolRegistry
from toolflow.tools.validation import validate_parameters

logger = get_logger(__name__)


class ToolDispatchError(Exception):
    """A dispatch failure detected before or around the handler call."""


class ToolDispatcher:
    """
    Executes tool-use blocks against registered handlers.

    Args:
        registry: Handler registry
        timeout: Optional per-call timeout in seconds for handlers
    """

    def __init__(self, registry: ToolRegistry, timeout: float | None = None):
        self._registry = registry
        self._timeout = timeout

    @staticmethod
    def _resolve_scenario(context: ExecutionContext, configuration: ToolConfiguration) -> str:
        scenario_id = context.scenario_id or configuration.scenario()
        if not scenario_id:
            raise ToolDispatchError("Scenario ID not found in context or toolConfig")
        return scenario_id

    async def _call_handler(self, handler, parameters: dict[str, Any], context: ExecutionContext) -> Any:
        if inspect.iscoroutinefunction(handler):
            call = handler(parameters, context)
        else:
            # Plain functions run in a worker thread
            call = asyncio.to_thread(handler, parameters, context)

        if self._timeout is None:
            result = await call
        else:
            try:
                result = await asyncio.wait_for(call, timeout=self._timeout)
            except TimeoutError:
                raise ToolDispatchError(f"Handler timed out after {self._timeout}s")

        if inspect.isawaitable(result):
            result = await result
        return result

    async def execute(
        self,
        tool_use: ToolUseBlock,
        configuration: ToolConfiguration | None,
        context: ExecutionContext,
    ) -> ToolExecutionResult:
        """
        Validate and run one tool invocation.

        Args:
            tool_use: The model's tool-use block
            configuration: Tools available to this execution
            context: Execution context passed through to the handler

        Returns:
            ToolExecutionResult; never raises for tool-level failures
        """
        parameters = tool_use.input or {}

        def failure(message: str) -> ToolExecutionResult:
            logger.warning(f"Tool '{tool_use.name}' ({tool_use.tool_use_id}) failed: {message}")
            return ToolExecutionResult(
                tool_use_id=tool_use.tool_use_id,
                tool_name=tool_use.name,
                parameters=parameters,
                result=None,
                success=False,
                error=message,
            )

        if configuration is None:
            return failure("Tool configuration not available in context")

        tool = self._registry.resolve(tool_use.name, configuration)
        if tool is None:
            return failure(f"Tool configuration not found for: {tool_use.name}")

        if isinstance(tool, DetectionTool):
            return failure(
                f'Tool "{tool.name}" does not have a handler configuration. '
                f"Detection-only tools cannot be executed."
            )

        try:
            scenario_id = self._resolve_scenario(context, configuration)
        except ToolDispatchError as e:
            return failure(str(e))

        validation = validate_parameters(parameters, tool.input_schema)
        for warning in validation.warnings:
            logger.debug(f"Tool '{tool.name}': {warning}")
        if not validation.is_valid:
            return failure(f"Parameter validation failed: {validation.summary()}")

        handler = self._registry.get_handler(scenario_id, tool.handler)
        if handler is None:
            return failure(f"No handler registered for {scenario_id}:{tool.handler}")

        logger.debug(f"Executing {tool.name} via {scenario_id}:{tool.handler}")
        try:
            result = await self._call_handler(handler, parameters, context)
        except Exception as e:
            return failure(f"Handler execution failed: {e}")

        return ToolExecutionResult(
            tool_use_id=tool_use.tool_use_id,
            tool_name=tool_use.name,
            parameters=parameters,
            result=result,
            success=True,
        )
