"""
Base classes for tool adapters.

Provides abstract interfaces for integrating external tool servers (MCP
servers, APIs, etc.) whose tools are offered to the model alongside locally
registered handlers.
"""

from abc import ABC, abstractmethod
from typing import Any


class ToolAdapter(ABC):
    """
    Abstract base class for tool adapters.

    Tool adapters provide a uniform interface for calling external tools,
    whether they're MCP servers, REST APIs, or other integrations.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the tool adapter.

        This may involve starting subprocesses, establishing connections,
        or performing handshakes with external services.

        Raises:
            ConnectionError: If initialization fails
        """

    @abstractmethod
    async def shutdown(self) -> None:
        """Close connections, terminate subprocesses and release resources."""

    @abstractmethod
    async def call(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Call a tool with the given arguments.

        Args:
            tool_name: Name of the tool to invoke
            arguments: Tool-specific arguments

        Returns:
            Tool execution result as a dictionary

        Raises:
            RuntimeError: If the adapter is not initialized or the call fails
        """

    @abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List all available tools from this adapter.

        Returns:
            Tool definitions in the flat format used by ToolConfiguration:

            [
                {
                    "name": "lookup_account",
                    "description": "Fetch an account by id",
                    "input_schema": {
                        "type": "object",
                        "properties": {"account_id": {"type": "string"}},
                        "required": ["account_id"]
                    }
                }
            ]
        """

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False
