"""
Tool configuration and dispatch data structures.

A ToolConfiguration is the set of tools offered to the model for one run.
Each tool is one of two kinds, decided once when the configuration is loaded:

- DetectionTool: advertised to the model, but has no handler. The model's
  request is recorded; dispatching it yields a failure result.
- ExecutableTool: carries a handler reference ("<file>.<entry_point>") that
  the ToolRegistry maps to a registered function for the run's scenario.
"""

import re
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Configuration ids such as "fraud-detection-tools" name their scenario
_SCENARIO_ID_PATTERN = re.compile(r"^(.+)-tools$")


class ToolConfigurationError(ValueError):
    """Raised when a tool configuration cannot be loaded."""


class _ToolSpecBase(BaseModel):
    name: str = Field(min_length=1, description="Tool name, unique within a configuration")
    description: str = Field(default="", description="What the tool does, shown to the model")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON-Schema-like parameter schema",
    )

    def definition(self) -> dict[str, Any]:
        """Flat definition handed to the Model Client."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class DetectionTool(_ToolSpecBase):
    """A tool the model may request but that nothing executes."""

    kind: Literal["detection"] = "detection"


class ExecutableTool(_ToolSpecBase):
    """A tool backed by a registered handler."""

    kind: Literal["executable"] = "executable"
    handler: str = Field(description='Handler reference, e.g. "tools/freezeAccount.freezeAccount"')

    @field_validator("handler")
    @classmethod
    def _check_handler_format(cls, value: str) -> str:
        file_path, _, entry_point = value.rpartition(".")
        if not file_path or not entry_point:
            raise ValueError(
                f'Invalid handler format: {value}. Expected format: "filename.entryPoint"'
            )
        return value


ToolSpecification = Annotated[DetectionTool | ExecutableTool, Field(discriminator="kind")]


class ToolConfiguration(BaseModel):
    """
    The tools available to one execution.

    Example:
        >>> config = ToolConfiguration.from_dict({
        ...     "id": "fraud-detection-tools",
        ...     "version": "1.0",
        ...     "tools": [{"toolSpec": {
        ...         "name": "freeze_account",
        ...         "description": "Freeze an account",
        ...         "inputSchema": {"json": {"type": "object", "properties": {}}},
        ...         "handler": "tools/freezeAccount.freezeAccount",
        ...     }}],
        ... })
        >>> config.scenario()
        'fraud-detection'
    """

    id: str | None = None
    version: str = "1.0"
    scenario_id: str | None = None
    description: str | None = None
    tools: list[ToolSpecification] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_names(self) -> "ToolConfiguration":
        seen: set[str] = set()
        for tool in self.tools:
            if tool.name in seen:
                raise ValueError(f"Duplicate tool name in configuration: {tool.name}")
            seen.add(tool.name)
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolConfiguration":
        """
        Load a configuration, normalising each tool entry.

        Accepts native entries (name/description/input_schema/handler) and
        Bedrock-style entries wrapped in ``toolSpec`` with ``inputSchema.json``.
        The tool kind is inferred from the presence of a handler.

        Raises:
            ToolConfigurationError: If the configuration is malformed
        """
        if not isinstance(data, dict):
            raise ToolConfigurationError("Configuration must be a JSON object")

        tools = []
        for index, entry in enumerate(data.get("tools") or []):
            if not isinstance(entry, dict):
                raise ToolConfigurationError(f"Tool at index {index} must be an object")
            spec = entry.get("toolSpec", entry)
            schema = spec.get("input_schema")
            if schema is None:
                schema = spec.get("inputSchema", {})
                if isinstance(schema, dict) and "json" in schema:
                    schema = schema["json"]
            normalised: dict[str, Any] = {
                "name": spec.get("name"),
                "description": spec.get("description", ""),
                "input_schema": schema or {"type": "object", "properties": {}},
            }
            if spec.get("handler"):
                normalised["kind"] = "executable"
                normalised["handler"] = spec["handler"]
            else:
                normalised["kind"] = "detection"
            tools.append(normalised)

        try:
            return cls.model_validate({
                "id": data.get("id"),
                "version": str(data.get("version", "1.0")),
                "scenario_id": data.get("scenario_id") or data.get("scenarioId"),
                "description": data.get("description"),
                "tools": tools,
            })
        except ValueError as e:
            raise ToolConfigurationError(f"Invalid tool configuration: {e}") from e

    def scenario(self) -> str | None:
        """Scenario id: explicit field first, else derived from ``<scenario>-tools`` ids."""
        if self.scenario_id:
            return self.scenario_id
        if self.id:
            match = _SCENARIO_ID_PATTERN.match(self.id)
            if match:
                return match.group(1)
        return None

    def get_tool(self, name: str) -> DetectionTool | ExecutableTool | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self.tools]


class ExecutionContext(BaseModel):
    """Per-call context handed to tool handlers."""

    execution_id: str
    tool_configuration: ToolConfiguration | None = None
    scenario_id: str | None = None
    dataset_context: Any = None
    iteration: int = 0

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ToolExecutionResult(BaseModel):
    """Outcome of one tool invocation."""

    tool_use_id: str = Field(description="Correlates to the model's tool-use block")
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    success: bool
    error: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
