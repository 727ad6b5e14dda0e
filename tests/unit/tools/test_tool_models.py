"""
Unit tests for tool configuration loading.
"""

import pytest
from pydantic import ValidationError

from toolflow.tools import DetectionTool, ExecutableTool, ToolConfiguration, ToolConfigurationError


class TestFromDict:

    def test_tool_spec_entries(self):
        config = ToolConfiguration.from_dict({
            "id": "fraud-detection-tools",
            "version": 2,
            "tools": [
                {"toolSpec": {
                    "name": "freeze_account",
                    "description": "Freeze",
                    "inputSchema": {"json": {"type": "object", "properties": {"id": {"type": "string"}}}},
                    "handler": "tools/freezeAccount.freezeAccount",
                }},
                {"toolSpec": {"name": "flag_transaction", "description": "Flag"}},
            ],
        })

        freeze, flag = config.tools
        assert isinstance(freeze, ExecutableTool)
        assert freeze.input_schema["properties"] == {"id": {"type": "string"}}
        assert isinstance(flag, DetectionTool)
        assert flag.input_schema == {"type": "object", "properties": {}}
        assert config.version == "2"

    def test_native_entries(self):
        config = ToolConfiguration.from_dict({
            "id": "x",
            "scenario_id": "shipping-logistics",
            "tools": [{"name": "t", "input_schema": {"type": "object"}, "handler": "a.b"}],
        })
        assert config.scenario() == "shipping-logistics"
        assert config.get_tool("t").handler == "a.b"

    def test_invalid_handler_format(self):
        with pytest.raises(ToolConfigurationError, match="Invalid handler format"):
            ToolConfiguration.from_dict({"tools": [{"name": "t", "handler": "nodot"}]})

    def test_duplicate_names(self):
        with pytest.raises(ToolConfigurationError, match="Duplicate tool name"):
            ToolConfiguration.from_dict({"tools": [{"name": "t"}, {"name": "t"}]})

    def test_non_object_rejected(self):
        with pytest.raises(ToolConfigurationError):
            ToolConfiguration.from_dict(["not", "a", "dict"])
        with pytest.raises(ToolConfigurationError, match="index 0"):
            ToolConfiguration.from_dict({"tools": ["freeze"]})


class TestScenario:

    @pytest.mark.parametrize(
        "config_id,expected",
        [
            ("fraud-detection-tools", "fraud-detection"),
            ("shipping-logistics-tools", "shipping-logistics"),
            ("adhoc", None),
            (None, None),
        ],
    )
    def test_derived_from_id(self, config_id, expected):
        assert ToolConfiguration(id=config_id).scenario() == expected

    def test_explicit_scenario_wins(self):
        assert ToolConfiguration(id="a-tools", scenario_id="b").scenario() == "b"


class TestDefinitions:

    def test_definitions_are_flat(self):
        config = ToolConfiguration(tools=[ExecutableTool(name="t", description="d", handler="a.b")])
        assert config.definitions() == [
            {"name": "t", "description": "d", "input_schema": {"type": "object", "properties": {}}}
        ]

    def test_discriminated_by_kind(self):
        config = ToolConfiguration.model_validate(
            {"tools": [{"kind": "detection", "name": "d"}, {"kind": "executable", "name": "e", "handler": "x.y"}]}
        )
        assert [type(tool) for tool in config.tools] == [DetectionTool, ExecutableTool]

    def test_executable_requires_handler(self):
        with pytest.raises(ValidationError):
            ExecutableTool(name="e")
