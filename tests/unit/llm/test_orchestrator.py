"""
Unit tests for the ConversationOrchestrator.

Tests cover:
- Input validation and execution setup
- Single-turn completion (end_turn)
- Tool use loop: success, handler failure, multiple blocks per turn
- Iteration limit with partial response recovery
- Unexpected stop reasons and model errors
- Cancellation, including mid-turn cancels
- Persistence failures
- Stream events and callback isolation
- Status, workflow and history queries
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from toolflow.config.settings import OrchestratorSettings
from toolflow.execution import ExecutionOptions, ExecutionRegistry, ExecutionStatus
from toolflow.llm.models import (
    LLMError,
    Message,
    ModelClient,
    ModelResponse,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
)
from toolflow.llm.orchestrator import TRUNCATION_MARKER, ConversationOrchestrator
from toolflow.tools import ToolConfiguration, ToolDispatcher, ToolRegistry
from toolflow.workflow import InMemoryWorkflowStore, StepType, WorkflowTracker

SCENARIO = "fraud-detection"
MODEL_ID = "anthropic/claude-3-5-sonnet-20241022"


# ---------------------------------------------------------------------------
# Helpers for building model responses
# ---------------------------------------------------------------------------

def _text_response(text: str, stop_reason: str = "end_turn") -> ModelResponse:
    """Model turn containing only text."""
    return ModelResponse(
        stop_reason=stop_reason,
        message=Message(role="assistant", content=[TextBlock(text=text)]),
        usage=TokenUsage(prompt_tokens=100, completion_tokens=20),
    )


def _tool_response(*calls: tuple[str, dict, str], text: str | None = None) -> ModelResponse:
    """Model turn requesting one or more tools: calls are (name, input, tool_use_id)."""
    content = [TextBlock(text=text)] if text else []
    content += [ToolUseBlock(tool_use_id=tool_use_id, name=name, input=args) for name, args, tool_use_id in calls]
    return ModelResponse(
        stop_reason="tool_use",
        message=Message(role="assistant", content=content),
        usage=TokenUsage(prompt_tokens=120, completion_tokens=30),
    )


def _step_types(workflow) -> list[str]:
    return [str(step.type) for step in workflow]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tool_configuration():
    """Fraud-detection tools: two executable, one detection-only."""
    return ToolConfiguration.from_dict({
        "id": "fraud-detection-tools",
        "version": "1.0",
        "tools": [
            {
                "toolSpec": {
                    "name": "lookup_account",
                    "description": "Fetch an account by id",
                    "inputSchema": {"json": {
                        "type": "object",
                        "properties": {"account_id": {"type": "string"}},
                        "required": ["account_id"],
                    }},
                    "handler": "tools/lookupAccount.lookupAccount",
                }
            },
            {
                "toolSpec": {
                    "name": "freeze_account",
                    "description": "Freeze an account",
                    "inputSchema": {"json": {
                        "type": "object",
                        "properties": {"account_id": {"type": "string"}},
                        "required": ["account_id"],
                    }},
                    "handler": "tools/freezeAccount.freezeAccount",
                }
            },
            {
                "toolSpec": {
                    "name": "flag_transaction",
                    "description": "Flag a suspicious transaction",
                    "inputSchema": {"json": {"type": "object", "properties": {}}},
                }
            },
        ],
    })


@pytest.fixture
def registry():
    """Handlers for the fraud-detection scenario; freeze_account always fails."""
    registry = ToolRegistry()

    @registry.handler(SCENARIO, "tools/lookupAccount.lookupAccount")
    async def lookup_account(parameters, context):
        return {"account_id": parameters["account_id"], "status": "active"}

    @registry.handler(SCENARIO, "tools/freezeAccount.freezeAccount")
    def freeze_account(parameters, context):
        raise RuntimeError("boom")

    return registry


@pytest.fixture
def model_client():
    return AsyncMock(spec=ModelClient)


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def tracker(store):
    return WorkflowTracker(store)


@pytest.fixture
def execution_registry():
    return ExecutionRegistry(max_history_age=timedelta(hours=1), max_history_count=50)


@pytest.fixture
def orchestrator(model_client, registry, tracker, execution_registry):
    return ConversationOrchestrator(
        model_client=model_client,
        dispatcher=ToolDispatcher(registry),
        tracker=tracker,
        execution_registry=execution_registry,
        settings=OrchestratorSettings(max_iterations=10),
    )


# ---------------------------------------------------------------------------
# Test Classes
# ---------------------------------------------------------------------------

class TestStartExecution:
    """Tests for execution setup."""

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self, orchestrator):
        with pytest.raises(ValueError, match="User prompt cannot be empty"):
            await orchestrator.start_execution(MODEL_ID, None, "   ")

    @pytest.mark.asyncio
    async def test_execution_id_format(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        handle = await orchestrator.start_execution(MODEL_ID, None, "Hello")
        result = await handle.wait()

        assert handle.execution_id.startswith("exec_")
        assert result.execution_id == handle.execution_id

    @pytest.mark.asyncio
    async def test_default_max_iterations_from_settings(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        handle = await orchestrator.start_execution(MODEL_ID, None, "Hello")
        await handle.wait()

        assert orchestrator.get_execution_status(handle.execution_id).max_iterations == 10

    @pytest.mark.asyncio
    async def test_context_payload_appended_to_prompt(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        await orchestrator.execute(
            MODEL_ID, "You are an analyst.", "Review these transactions",
            context_payload={"transactions": [{"id": "T1", "amount": 950}]},
        )

        messages = model_client.converse.call_args.args[2]
        first_turn = messages[0].text()
        assert first_turn.startswith("Review these transactions")
        assert "Data to analyze:" in first_turn
        assert '"amount": 950' in first_turn

    @pytest.mark.asyncio
    async def test_passes_system_prompt_and_tool_definitions(self, orchestrator, model_client, tool_configuration):
        model_client.converse.return_value = _text_response("OK")

        await orchestrator.execute(MODEL_ID, "Be careful.", "Check", tool_configuration=tool_configuration)

        model_id, system_prompt, _, tools = model_client.converse.call_args.args
        assert model_id == MODEL_ID
        assert system_prompt == "Be careful."
        assert [tool["name"] for tool in tools] == ["lookup_account", "freeze_account", "flag_transaction"]
        assert "input_schema" in tools[0]


class TestSingleTurnCompletion:
    """Tests for a run that ends on the first model turn."""

    @pytest.mark.asyncio
    async def test_end_turn_returns_final_response(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        result = await orchestrator.execute(MODEL_ID, None, "Say OK")

        assert result.success is True
        assert result.status == ExecutionStatus.COMPLETED
        assert result.results.final_response == "OK"
        assert result.iteration_count == 1
        assert result.tool_call_count == 0
        assert result.error is None

    @pytest.mark.asyncio
    async def test_end_turn_step_sequence(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        result = await orchestrator.execute(MODEL_ID, None, "Say OK")

        assert _step_types(result.workflow) == [
            "iteration_start", "model_request", "llm_response", "completion",
        ]
        assert [step.sequence for step in result.workflow] == [0, 1, 2, 3]
        assert all(step.id.startswith("step_") for step in result.workflow)

    @pytest.mark.asyncio
    async def test_llm_response_step_records_usage(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        result = await orchestrator.execute(MODEL_ID, None, "Say OK")

        llm_step = next(step for step in result.workflow if step.type == StepType.LLM_RESPONSE)
        assert llm_step.content["stop_reason"] == "end_turn"
        assert llm_step.content["usage"] == {"prompt_tokens": 100, "completion_tokens": 20}
        assert llm_step.content["has_tool_use"] is False

    @pytest.mark.asyncio
    async def test_duration_and_timestamps(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        result = await orchestrator.execute(MODEL_ID, None, "Say OK")
        status = orchestrator.get_execution_status(result.execution_id)

        assert status.end_time >= status.start_time
        assert result.total_duration >= 0


class TestToolUseLoop:
    """Tests for tool dispatch between model turns."""

    @pytest.mark.asyncio
    async def test_successful_tool_call_then_completion(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(("lookup_account", {"account_id": "A-100"}, "tu_1")),
            _text_response("Account A-100 is active."),
        ]

        result = await orchestrator.execute(
            MODEL_ID, None, "Check A-100", tool_configuration=tool_configuration,
        )

        assert result.success is True
        assert result.results.final_response == "Account A-100 is active."
        assert result.tool_call_count == 1
        assert result.iteration_count == 2

        execution = result.results.tool_executions[0]
        assert execution.success is True
        assert execution.result == {"account_id": "A-100", "status": "active"}

    @pytest.mark.asyncio
    async def test_tool_result_sent_back_to_model(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(("lookup_account", {"account_id": "A-100"}, "tu_1")),
            _text_response("Done."),
        ]

        await orchestrator.execute(MODEL_ID, None, "Check A-100", tool_configuration=tool_configuration)

        second_call_messages = model_client.converse.call_args_list[1].args[2]
        assert [m.role for m in second_call_messages] == ["user", "assistant", "user"]
        (tool_result,) = second_call_messages[2].tool_results()
        assert tool_result.tool_use_id == "tu_1"
        assert tool_result.status == "success"
        assert json.loads(tool_result.content) == {"account_id": "A-100", "status": "active"}

    @pytest.mark.asyncio
    async def test_handler_failure_reported_to_model(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(("freeze_account", {"account_id": "A-100"}, "tu_1")),
            _text_response("Could not freeze the account."),
        ]

        result = await orchestrator.execute(
            MODEL_ID, None, "Freeze A-100", tool_configuration=tool_configuration,
        )

        assert result.success is True
        assert result.status == ExecutionStatus.COMPLETED
        failed = result.results.tool_executions[0]
        assert failed.success is False
        assert "boom" in failed.error

        (tool_result,) = model_client.converse.call_args_list[1].args[2][2].tool_results()
        assert tool_result.status == "error"
        assert tool_result.content.startswith("Error: ")
        assert "boom" in tool_result.content

    @pytest.mark.asyncio
    async def test_detection_tool_is_not_executed(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(("flag_transaction", {}, "tu_1")),
            _text_response("Flagged."),
        ]

        result = await orchestrator.execute(MODEL_ID, None, "Flag it", tool_configuration=tool_configuration)

        failed = result.results.tool_executions[0]
        assert failed.success is False
        assert "Detection-only" in failed.error

    @pytest.mark.asyncio
    async def test_multiple_tool_uses_answered_in_one_turn(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(
                ("lookup_account", {"account_id": "A-1"}, "tu_1"),
                ("lookup_account", {"account_id": "A-2"}, "tu_2"),
            ),
            _text_response("Both active."),
        ]

        result = await orchestrator.execute(MODEL_ID, None, "Check both", tool_configuration=tool_configuration)

        assert result.tool_call_count == 2
        messages = model_client.converse.call_args_list[1].args[2]
        assert len(messages) == 3
        assert [block.tool_use_id for block in messages[2].tool_results()] == ["tu_1", "tu_2"]

    @pytest.mark.asyncio
    async def test_tool_steps_recorded_per_call(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(("lookup_account", {"account_id": "A-1"}, "tu_1")),
            _text_response("Done."),
        ]

        result = await orchestrator.execute(MODEL_ID, None, "Check", tool_configuration=tool_configuration)

        assert _step_types(result.workflow) == [
            "iteration_start", "model_request", "llm_response", "tool_call", "tool_result",
            "iteration_start", "model_request", "llm_response", "completion",
        ]
        tool_call = result.workflow[3]
        assert tool_call.content["tool_name"] == "lookup_account"
        assert tool_call.content["parameters"] == {"account_id": "A-1"}
        assert tool_call.iteration == 1

    @pytest.mark.asyncio
    async def test_parallel_dispatch_preserves_order(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(
                ("freeze_account", {"account_id": "A-1"}, "tu_1"),
                ("lookup_account", {"account_id": "A-2"}, "tu_2"),
            ),
            _text_response("Done."),
        ]

        result = await orchestrator.execute(
            MODEL_ID, None, "Go", tool_configuration=tool_configuration,
            options=ExecutionOptions(parallel_tool_calls=True),
        )

        assert [r.tool_use_id for r in result.results.tool_executions] == ["tu_1", "tu_2"]
        assert [r.success for r in result.results.tool_executions] == [False, True]
        results = model_client.converse.call_args_list[1].args[2][2].tool_results()
        assert [block.tool_use_id for block in results] == ["tu_1", "tu_2"]

    @pytest.mark.asyncio
    async def test_tool_use_without_blocks_ends_run(self, orchestrator, model_client):
        model_client.converse.return_value = ModelResponse(
            stop_reason="tool_use",
            message=Message(role="assistant", content=[TextBlock(text="Let me check")]),
        )

        result = await orchestrator.execute(MODEL_ID, None, "Check")

        assert result.status == ExecutionStatus.COMPLETED
        assert result.workflow[-1].type == StepType.ERROR
        assert model_client.converse.call_count == 1


class TestIterationLimit:
    """Tests for the max_iterations bound."""

    @pytest.mark.asyncio
    async def test_limit_reached_stops_loop(self, orchestrator, model_client, tool_configuration):
        model_client.converse.return_value = _tool_response(
            ("lookup_account", {"account_id": "A-1"}, "tu_1"), text="Still checking"
        )

        result = await orchestrator.execute(
            MODEL_ID, None, "Loop", tool_configuration=tool_configuration,
            options=ExecutionOptions(max_iterations=2),
        )

        assert model_client.converse.call_count == 2
        assert result.iteration_count == 2
        assert result.status == ExecutionStatus.COMPLETED
        assert result.workflow[-1].type == StepType.ITERATION_LIMIT_REACHED
        assert result.workflow[-1].content["max_iterations"] == 2

    @pytest.mark.asyncio
    async def test_partial_response_gets_truncation_marker(self, orchestrator, model_client, tool_configuration):
        model_client.converse.return_value = _tool_response(
            ("lookup_account", {"account_id": "A-1"}, "tu_1"), text="Still checking"
        )

        result = await orchestrator.execute(
            MODEL_ID, None, "Loop", tool_configuration=tool_configuration,
            options=ExecutionOptions(max_iterations=2),
        )

        assert result.results.final_response == "Still checking" + TRUNCATION_MARKER

    @pytest.mark.asyncio
    async def test_no_partial_text_leaves_response_empty(self, orchestrator, model_client, tool_configuration):
        model_client.converse.return_value = _tool_response(("lookup_account", {"account_id": "A-1"}, "tu_1"))

        result = await orchestrator.execute(
            MODEL_ID, None, "Loop", tool_configuration=tool_configuration,
            options=ExecutionOptions(max_iterations=1),
        )

        assert result.results.final_response is None


class TestStopReasonsAndErrors:
    """Tests for unexpected stop reasons and model failures."""

    @pytest.mark.asyncio
    async def test_unexpected_stop_reason_ends_run(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("Partial answer", stop_reason="max_tokens")

        result = await orchestrator.execute(MODEL_ID, None, "Write a lot")

        assert result.status == ExecutionStatus.COMPLETED
        assert result.results.final_response is None
        error_step = result.workflow[-1]
        assert error_step.type == StepType.ERROR
        assert "max_tokens" in error_step.content["error"]
        assert model_client.converse.call_count == 1

    @pytest.mark.asyncio
    async def test_model_error_finalizes_with_error_status(self, orchestrator, model_client):
        model_client.converse.side_effect = LLMError("LLM API call failed: rate limited")

        result = await orchestrator.execute(MODEL_ID, None, "Hello")

        assert result.success is False
        assert result.status == ExecutionStatus.ERROR
        assert "rate limited" in result.error
        assert result.workflow[-1].type == StepType.ERROR
        assert result.workflow[-1].content["error_type"] == "execution_error"

    @pytest.mark.asyncio
    async def test_model_error_persists_workflow(self, orchestrator, model_client, tracker):
        model_client.converse.side_effect = LLMError("down")

        result = await orchestrator.execute(MODEL_ID, None, "Hello")
        stored = await tracker.load_workflow(result.execution_id)

        assert stored is not None
        assert stored.status == "error"
        assert stored.errors[0]["kind"] == "execution_error"
        assert stored.errors[0]["message"] == "down"


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_during_final_model_call_keeps_answer(self, orchestrator, model_client):
        gate = asyncio.Event()
        started = asyncio.Event()

        async def slow_converse(*args):
            started.set()
            await gate.wait()
            return _text_response("Answer already on its way")

        model_client.converse.side_effect = slow_converse

        handle = await orchestrator.start_execution(MODEL_ID, None, "Hello")
        await started.wait()
        assert await orchestrator.cancel_execution(handle.execution_id) is True
        gate.set()
        result = await handle.wait()

        assert result.status == ExecutionStatus.CANCELLED
        assert result.success is False
        assert result.results.final_response == "Answer already on its way"
        assert _step_types(result.workflow).count("cancellation") == 1
        assert model_client.converse.call_count == 1

    @pytest.mark.asyncio
    async def test_cancel_during_model_call_skips_requested_tools(
        self, orchestrator, model_client, registry, tool_configuration
    ):
        gate = asyncio.Event()
        started = asyncio.Event()
        calls = []
        registry.unregister(SCENARIO, "tools/lookupAccount.lookupAccount")
        registry.register(
            SCENARIO, "tools/lookupAccount.lookupAccount", lambda parameters, context: calls.append(1)
        )

        async def slow_converse(*args):
            started.set()
            await gate.wait()
            return _tool_response(("lookup_account", {"account_id": "A-1"}, "tu_1"))

        model_client.converse.side_effect = slow_converse

        handle = await orchestrator.start_execution(
            MODEL_ID, None, "Check", tool_configuration=tool_configuration,
        )
        await started.wait()
        await orchestrator.cancel_execution(handle.execution_id)
        gate.set()
        result = await handle.wait()

        assert result.status == ExecutionStatus.CANCELLED
        assert calls == []
        assert "tool_call" not in _step_types(result.workflow)
        assert "completion" not in _step_types(result.workflow)

    @pytest.mark.asyncio
    async def test_cancel_between_tool_dispatches(self, orchestrator, model_client, registry, tool_configuration):
        dispatched = []

        async def cancelling_lookup(parameters, context):
            dispatched.append(parameters["account_id"])
            await orchestrator.cancel_execution(context.execution_id, reason="Operator stop")
            return {"account_id": parameters["account_id"], "status": "active"}

        registry.unregister(SCENARIO, "tools/lookupAccount.lookupAccount")
        registry.register(SCENARIO, "tools/lookupAccount.lookupAccount", cancelling_lookup)
        model_client.converse.side_effect = [
            _tool_response(
                ("lookup_account", {"account_id": "A-1"}, "tu_1"),
                ("lookup_account", {"account_id": "A-2"}, "tu_2"),
            ),
            _text_response("Should never be requested"),
        ]

        result = await orchestrator.execute(MODEL_ID, None, "Check both", tool_configuration=tool_configuration)

        types = _step_types(result.workflow)
        assert result.status == ExecutionStatus.CANCELLED
        assert dispatched == ["A-1"]
        assert model_client.converse.call_count == 1
        assert types.count("cancellation") == 1
        assert "model_request" not in types[types.index("cancellation"):]
        assert types.count("tool_call") == 1


    @pytest.mark.asyncio
    async def test_cancel_before_first_iteration(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        handle = await orchestrator.start_execution(MODEL_ID, None, "Hello")
        await orchestrator.cancel_execution(handle.execution_id, reason="Operator stop")
        result = await handle.wait()

        assert result.status == ExecutionStatus.CANCELLED
        assert result.iteration_count == 0
        model_client.converse.assert_not_called()
        assert result.workflow[0].content == {"reason": "Operator stop"}

    @pytest.mark.asyncio
    async def test_cancel_unknown_execution(self, orchestrator):
        assert await orchestrator.cancel_execution("exec_missing") is False

    @pytest.mark.asyncio
    async def test_cancel_finished_execution(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")
        result = await orchestrator.execute(MODEL_ID, None, "Hello")

        assert await orchestrator.cancel_execution(result.execution_id) is False
        assert orchestrator.get_execution_status(result.execution_id).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_workflow_persisted(self, orchestrator, model_client, tracker):
        model_client.converse.return_value = _text_response("OK")

        handle = await orchestrator.start_execution(MODEL_ID, None, "Hello")
        await orchestrator.cancel_execution(handle.execution_id)
        await handle.wait()

        stored = await tracker.load_workflow(handle.execution_id)
        assert stored.status == "cancelled"
        assert [str(step.type) for step in stored.steps] == ["cancellation"]


class TestPersistenceFailures:
    """A failing workflow store never strands an execution."""

    @pytest.mark.asyncio
    async def test_store_error_leaves_outcome_and_registry_intact(
        self, orchestrator, model_client, store, tracker, execution_registry
    ):
        store.save_workflow = AsyncMock(side_effect=RuntimeError("backend unavailable"))
        model_client.converse.return_value = _text_response("OK")

        result = await orchestrator.execute(MODEL_ID, None, "Hello")

        assert result.success is True
        assert result.results.final_response == "OK"
        assert execution_registry.is_active(result.execution_id) is False
        assert tracker.is_active(result.execution_id) is False
        assert orchestrator.get_active_executions() == []

    @pytest.mark.asyncio
    async def test_tracker_error_still_moves_execution_to_history(
        self, orchestrator, model_client, tracker, execution_registry
    ):
        tracker.complete_execution = AsyncMock(side_effect=RuntimeError("tracker broke"))
        model_client.converse.return_value = _text_response("OK")

        result = await orchestrator.execute(MODEL_ID, None, "Hello")

        assert result.status == ExecutionStatus.COMPLETED
        assert execution_registry.is_active(result.execution_id) is False
        assert execution_registry.history_count() == 1


class TestStreamEvents:
    """Tests for on_stream_update delivery."""

    @pytest.mark.asyncio
    async def test_event_sequence_for_tool_run(self, orchestrator, model_client, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(
                ("lookup_account", {"account_id": "A-1"}, "tu_1"),
                ("freeze_account", {"account_id": "A-1"}, "tu_2"),
            ),
            _text_response("Done."),
        ]
        events = []

        await orchestrator.execute(
            MODEL_ID, None, "Go", tool_configuration=tool_configuration,
            options=ExecutionOptions(on_stream_update=events.append),
        )

        assert [event.type for event in events] == [
            "iteration_start", "model_request", "tool_requests",
            "tool_execution", "tool_result", "tool_execution", "tool_error",
            "iteration_start", "model_request", "completion",
        ]
        assert events[0].content == "Starting iteration 1/10..."
        assert events[2].tool_requests[0] == {"name": "lookup_account", "tool_use_id": "tu_1", "parameter_count": 1}
        assert events[-1].final_response == "Done."
        assert "boom" in events[6].error

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort_run(self, orchestrator, model_client):
        model_client.converse.return_value = _text_response("OK")

        def broken_callback(event):
            raise RuntimeError("display crashed")

        result = await orchestrator.execute(
            MODEL_ID, None, "Hello", options=ExecutionOptions(on_stream_update=broken_callback),
        )

        assert result.success is True
        assert result.results.final_response == "OK"


class TestQueries:
    """Tests for status, workflow and history queries."""

    @pytest.mark.asyncio
    async def test_status_unknown_execution(self, orchestrator):
        assert orchestrator.get_execution_status("exec_missing") is None
        assert orchestrator.get_workflow("exec_missing") == []

    @pytest.mark.asyncio
    async def test_finished_execution_moves_to_history(self, orchestrator, model_client, execution_registry):
        model_client.converse.return_value = _text_response("OK")

        result = await orchestrator.execute(MODEL_ID, None, "Hello")

        assert orchestrator.get_active_executions() == []
        assert execution_registry.history_count() == 1
        status = orchestrator.get_execution_status(result.execution_id)
        assert status.status.is_terminal
        assert len(orchestrator.get_workflow(result.execution_id)) == 4

    @pytest.mark.asyncio
    async def test_active_execution_listed(self, orchestrator, model_client):
        gate = asyncio.Event()

        async def slow_converse(*args):
            await gate.wait()
            return _text_response("OK")

        model_client.converse.side_effect = slow_converse

        handle = await orchestrator.start_execution(MODEL_ID, None, "Hello")
        await asyncio.sleep(0)
        active = orchestrator.get_active_executions()
        gate.set()
        await handle.wait()

        assert [summary.execution_id for summary in active] == [handle.execution_id]
        assert active[0].status == ExecutionStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_cleanup_history(self, orchestrator, model_client, execution_registry):
        model_client.converse.return_value = _text_response("OK")
        for _ in range(3):
            await orchestrator.execute(MODEL_ID, None, "Hello")

        removed = orchestrator.cleanup_history(max_count=1)

        assert removed == 2
        assert execution_registry.history_count() == 1

    @pytest.mark.asyncio
    async def test_tracker_history_records_tool_calls(self, orchestrator, model_client, tracker, tool_configuration):
        model_client.converse.side_effect = [
            _tool_response(("lookup_account", {"account_id": "A-1"}, "tu_1")),
            _text_response("Done."),
        ]

        await orchestrator.execute(MODEL_ID, None, "Go", tool_configuration=tool_configuration)
        stats = await tracker.get_workflow_statistics()

        assert stats.total_workflows == 1
        assert stats.completed_workflows == 1
        assert stats.total_tool_calls == 1
        assert stats.model_breakdown == {MODEL_ID: 1}
