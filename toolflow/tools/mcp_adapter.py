"""
MCP tool adapter.

Spawns an MCP server as a subprocess, speaks JSON-RPC to it over stdio and
exposes its tools to the conversation loop: each server tool becomes an
ExecutableTool whose handler forwards the call to the server.
"""

from typing import Any

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from toolflow.config.logging import get_logger
from toolflow.tools.base import ToolAdapter
from toolflow.tools.models import ExecutableTool, ExecutionContext, ToolConfiguration
from toolflow.tools.registry import ToolHandler, ToolRegistry

logger = get_logger(__name__)

HANDLER_PREFIX = "mcp"


class MCPToolAdapter(ToolAdapter):
    """
    Tool adapter for a stdio MCP server.

    Args:
        command: Executable that starts the server (e.g. "node", "uvx")
        args: Arguments passed to the command
        env: Optional environment for the subprocess
    """

    def __init__(self, command: str, args: list[str] | None = None, env: dict[str, str] | None = None):
        self._command = command
        self._args = list(args or [])
        self._env = env
        self._initialized = False
        self._session = None
        self._stdio_context = None
        self._session_context = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Start the server subprocess and perform the MCP handshake."""
        if self._initialized:
            return
        if not self._command:
            raise ValueError("MCP server command not specified. Set TOOLS__MCP_SERVER_COMMAND.")

        server_params = StdioServerParameters(command=self._command, args=self._args, env=self._env)

        self._stdio_context = stdio_client(server_params)
        read_stream, write_stream = await self._stdio_context.__aenter__()

        self._session_context = ClientSession(read_stream, write_stream)
        self._session = await self._session_context.__aenter__()
        await self._session.initialize()

        self._initialized = True
        logger.info(f"MCP server started: {self._command} {' '.join(self._args)}")

    async def shutdown(self) -> None:
        """Close the session and terminate the server subprocess."""
        if not self._initialized:
            return

        if self._session_context is not None:
            await self._session_context.__aexit__(None, None, None)
            self._session_context = None
            self._session = None

        if self._stdio_context is not None:
            await self._stdio_context.__aexit__(None, None, None)
            self._stdio_context = None

        self._initialized = False
        logger.info("MCP server stopped")

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        if not self._initialized:
            raise RuntimeError("Tool adapter not initialized")

        result = await self._session.call_tool(tool_name, arguments)

        # MCP returns content as a list of content blocks
        text_parts = [content.text for content in result.content if hasattr(content, "text")]
        text = " ".join(text_parts) if text_parts else ""

        if getattr(result, "isError", False):
            raise RuntimeError(f"MCP tool {tool_name} failed: {text or 'no details'}")
        return {"text": text}

    async def list_tools(self) -> list[dict[str, Any]]:
        if not self._initialized:
            raise RuntimeError("Tool adapter not initialized")

        result = await self._session.list_tools()
        return [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.inputSchema,
            }
            for tool in result.tools
        ]

    @staticmethod
    def handler_reference(tool_name: str) -> str:
        return f"{HANDLER_PREFIX}.{tool_name}"

    def _forwarder(self, tool_name: str) -> ToolHandler:
        async def forward(parameters: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
            logger.debug(f"Forwarding {tool_name} to MCP server for {context.execution_id}")
            return await self.call(tool_name, parameters)

        forward.__name__ = f"mcp_{tool_name}"
        return forward

    async def register_handlers(self, registry: ToolRegistry, scenario_id: str) -> list[str]:
        """
        Register a forwarding handler for every server tool.

        Returns:
            Names of the registered tools
        """
        names = []
        for tool in await self.list_tools():
            registry.register(scenario_id, self.handler_reference(tool["name"]), self._forwarder(tool["name"]))
            names.append(tool["name"])
        logger.info(f"Registered {len(names)} MCP tool(s) for scenario {scenario_id}")
        return names

    async def tool_configuration(self, config_id: str, scenario_id: str | None = None) -> ToolConfiguration:
        """Build a ToolConfiguration offering every server tool as an executable tool."""
        tools = [
            ExecutableTool(
                name=tool["name"],
                description=tool["description"],
                input_schema=tool["input_schema"] or {"type": "object", "properties": {}},
                handler=self.handler_reference(tool["name"]),
            )
            for tool in await self.list_tools()
        ]
        return ToolConfiguration(id=config_id, scenario_id=scenario_id, tools=tools)
