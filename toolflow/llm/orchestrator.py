"""
Conversation orchestrator: the tool-use iteration loop.

One execution runs as one asyncio task. Each iteration sends the whole
conversation to the Model Client, then branches on the stop reason:

    end_turn  → final text extracted, loop ends
    tool_use  → every tool-use block dispatched, results appended as one
                user turn, loop continues
    other     → error step recorded, loop ends without a final response

Data flow:
    start_execution()
          ↓
    ExecutionRegistry.add  +  WorkflowTracker.create_execution
          ↓
    ModelClient.converse()  ←→  ToolDispatcher.execute()   (repeat)
          ↓
    WorkflowTracker.complete_execution  →  ExecutionRegistry.finish
          ↓
    ExecutionResult

Design decisions:
- Tool failures are data, not exceptions. The dispatcher turns them into
  failed ToolExecutionResults and the model receives "Error: <message>" with
  an error status so it can retry or pick another tool.
- Orchestration failures (model call errors, bugs) end the execution with
  status "error". The record is still finalised and persisted, and the
  caller's await returns an unsuccessful ExecutionResult instead of raising.
- Unknown stop reasons end the run without retrying. The loop does not
  guess what the model meant.
- Cancellation is cooperative. It is checked before each model call and
  before each tool dispatch; in-flight calls are never interrupted. An
  answer that arrives after a cancel is kept, but the run ends cancelled.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic_core import to_jsonable_python

from toolflow.config.logging import get_logger
from toolflow.config.settings import OrchestratorSettings
from toolflow.execution.models import (
    Execution,
    ExecutionErrorEntry,
    ExecutionOptions,
    ExecutionResult,
    ExecutionStatus,
    ExecutionStatusSnapshot,
    ExecutionSummary,
    StreamEvent,
    snapshot_of,
    summary_of,
)
from toolflow.execution.registry import ExecutionRegistry
from toolflow.llm.models import (
    Message,
    ModelClient,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from toolflow.tools.dispatcher import ToolDispatcher
from toolflow.tools.models import ExecutionContext, ToolConfiguration, ToolExecutionResult
from toolflow.workflow.models import StepType, WorkflowNotFoundError, WorkflowStep
from toolflow.workflow.tracker import WorkflowTracker

logger = get_logger(__name__)

TRUNCATION_MARKER = "\n\n[Response truncated due to iteration limit]"
CANCELLATION_REASON = "Cancelled by user"


class ExecutionCancelled(Exception):
    """Raised inside the loop when a cancellation request is observed."""


class ExecutionHandle:
    """
    Reference to a started execution.

    ``await handle.wait()`` returns the ExecutionResult. Cancelling the
    waiting coroutine does not cancel the execution itself; use
    ConversationOrchestrator.cancel_execution() for that.
    """

    def __init__(self, execution_id: str, task: asyncio.Task[ExecutionResult]):
        self.execution_id = execution_id
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> ExecutionResult:
        return await asyncio.shield(self._task)


class ConversationOrchestrator:
    """
    Drives tool-use conversations from initial prompt to final answer.

    Args:
        model_client: Model Client used for every model call
        dispatcher: Executes tool-use blocks
        tracker: Records workflow steps and persists finished workflows
        execution_registry: Shared map of running and finished executions
        settings: Loop defaults (max iterations, parallel tool calls)
    """

    def __init__(
        self,
        model_client: ModelClient,
        dispatcher: ToolDispatcher,
        tracker: WorkflowTracker,
        execution_registry: ExecutionRegistry,
        settings: OrchestratorSettings | None = None,
    ):
        self._model_client = model_client
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._registry = execution_registry
        self._settings = settings or OrchestratorSettings()
        self._tasks: dict[str, asyncio.Task[ExecutionResult]] = {}

    # ------------------------------------------------------------------
    # Control API
    # ------------------------------------------------------------------

    async def start_execution(
        self,
        model_id: str,
        system_prompt: str | None,
        user_prompt: str,
        context_payload: Any = None,
        tool_configuration: ToolConfiguration | None = None,
        options: ExecutionOptions | None = None,
    ) -> ExecutionHandle:
        """
        Start an execution in the background.

        Args:
            model_id: Model identifier passed to the Model Client
            system_prompt: System prompt (may be None)
            user_prompt: The user's request (must be non-empty)
            context_payload: Optional data appended to the user turn
            tool_configuration: Tools offered to the model
            options: Per-run options

        Returns:
            ExecutionHandle for waiting on the result

        Raises:
            ValueError: If the user prompt is empty
        """
        if not user_prompt or not user_prompt.strip():
            raise ValueError("User prompt cannot be empty")

        options = options or ExecutionOptions()
        execution = Execution(
            execution_id=f"exec_{uuid.uuid4().hex}",
            model_id=model_id,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            context_payload=context_payload,
            tool_configuration=tool_configuration,
            options=options,
            max_iterations=options.max_iterations or self._settings.max_iterations,
        )
        execution_id = execution.execution_id

        self._registry.add(execution)
        self._tracker.create_execution(
            execution_id,
            {
                "model_id": model_id,
                "max_iterations": execution.max_iterations,
                "start_time": execution.start_time,
                "tool_configuration_id": tool_configuration.id if tool_configuration else None,
                "tool_names": [tool.name for tool in tool_configuration.tools] if tool_configuration else [],
                "scenario_id": options.scenario_id,
            },
        )
        logger.info(
            f"Starting execution {execution_id} (model={model_id}, "
            f"max_iterations={execution.max_iterations}, "
            f"tools={len(tool_configuration.tools) if tool_configuration else 0})"
        )

        task = asyncio.create_task(self._run(execution), name=f"toolflow-{execution_id}")
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution_id, None))
        return ExecutionHandle(execution_id, task)

    async def execute(
        self,
        model_id: str,
        system_prompt: str | None,
        user_prompt: str,
        context_payload: Any = None,
        tool_configuration: ToolConfiguration | None = None,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Start an execution and wait for it to finish."""
        handle = await self.start_execution(
            model_id, system_prompt, user_prompt, context_payload, tool_configuration, options
        )
        return await handle.wait()

    async def cancel_execution(self, execution_id: str, reason: str = CANCELLATION_REASON) -> bool:
        """
        Request cancellation of a running execution.

        The loop finishes the execution as cancelled at its next check. If
        no loop task is running for it, it is finished immediately.

        Returns:
            True if a running execution was flagged, False otherwise
        """
        execution = self._registry.get_active(execution_id)
        if execution is None or execution.cancelled:
            return False

        execution.cancelled = True
        self._add_step(execution, StepType.CANCELLATION, {"reason": reason})
        logger.info(f"Cancellation requested for {execution_id}: {reason}")

        task = self._tasks.get(execution_id)
        if task is None or task.done():
            execution.status = ExecutionStatus.CANCELLED
            await self._finalize(execution)
        return True

    def get_execution_status(self, execution_id: str) -> ExecutionStatusSnapshot | None:
        execution = self._registry.get(execution_id)
        return snapshot_of(execution) if execution is not None else None

    def get_workflow(self, execution_id: str) -> list[WorkflowStep]:
        execution = self._registry.get(execution_id)
        if execution is None:
            return []
        return [step.model_copy(deep=True) for step in execution.workflow]

    def get_active_executions(self) -> list[ExecutionSummary]:
        return [summary_of(execution) for execution in self._registry.list_active()]

    def cleanup_history(self, max_age=None, max_count: int | None = None) -> int:
        """Evict finished executions from memory; durable history is untouched."""
        return self._registry.cleanup_history(max_age=max_age, max_count=max_count)

    async def shutdown(self) -> None:
        """Cancel every running execution and wait for them to finish."""
        for execution in self._registry.list_active():
            await self.cancel_execution(execution.execution_id, reason="Orchestrator shutting down")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _add_step(
        self,
        execution: Execution,
        step_type: StepType,
        content: dict[str, Any],
        iteration: int | None = None,
    ) -> WorkflowStep:
        step = WorkflowStep(
            id=f"step_{uuid.uuid4().hex}",
            execution_id=execution.execution_id,
            type=step_type,
            iteration=execution.current_iteration if iteration is None else iteration,
            sequence=len(execution.workflow),
            content=content,
        )
        execution.workflow.append(step)
        try:
            self._tracker.add_step(execution.execution_id, step)
        except WorkflowNotFoundError:
            logger.debug(f"Workflow {execution.execution_id} no longer tracked; kept {step_type} locally")
        return step

    def _emit(self, execution: Execution, event_type: str, content: str, **fields: Any) -> None:
        callback = execution.options.on_stream_update
        if callback is None:
            return
        event = StreamEvent(
            type=event_type,
            content=content,
            execution_id=execution.execution_id,
            iteration=execution.current_iteration,
            **fields,
        )
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"Stream callback failed on {event_type} for {execution.execution_id}: {e}")

    @staticmethod
    def _check_cancelled(execution: Execution) -> None:
        if execution.cancelled:
            raise ExecutionCancelled(execution.execution_id)

    @staticmethod
    def _build_user_prompt(user_prompt: str, context_payload: Any) -> str:
        if context_payload is None or context_payload == "":
            return user_prompt
        if not isinstance(context_payload, str):
            context_payload = json.dumps(context_payload, indent=2, default=str)
        return f"{user_prompt}\n\nData to analyze:\n{context_payload}"

    @staticmethod
    def _recover_partial_response(messages: list[Message]) -> str | None:
        for message in reversed(messages):
            if message.role == "assistant":
                return message.text() or None
        return None

    @staticmethod
    def _tool_result_block(result: ToolExecutionResult) -> ToolResultBlock:
        if result.success:
            content = json.dumps(result.result, default=str)
        else:
            content = f"Error: {result.error}"
        return ToolResultBlock(
            tool_use_id=result.tool_use_id,
            content=content,
            status="success" if result.success else "error",
        )

    # ------------------------------------------------------------------
    # The loop
    # ------------------------------------------------------------------

    async def _run(self, execution: Execution) -> ExecutionResult:
        try:
            await self._converse(execution)
        except ExecutionCancelled:
            execution.status = ExecutionStatus.CANCELLED
        except asyncio.CancelledError:
            # Task cancelled from outside: keep the record, then let the cancellation propagate
            execution.cancelled = True
            execution.status = ExecutionStatus.CANCELLED
            await self._finalize(execution)
            raise
        except Exception as e:
            logger.error(f"Execution {execution.execution_id} failed: {e}", exc_info=True)
            execution.status = ExecutionStatus.ERROR
            execution.errors.append(ExecutionErrorEntry(kind="execution_error", message=str(e)))
            self._add_step(execution, StepType.ERROR, {"error": str(e), "error_type": "execution_error"})
        else:
            # A cancel that arrived during the last model call keeps the answer
            execution.status = ExecutionStatus.CANCELLED if execution.cancelled else ExecutionStatus.COMPLETED
        return await self._finalize(execution)

    async def _converse(self, execution: Execution) -> None:
        configuration = execution.tool_configuration
        tool_definitions = configuration.definitions() if configuration else []
        max_iterations = execution.max_iterations

        execution.messages = [
            Message(
                role="user",
                content=[TextBlock(text=self._build_user_prompt(execution.user_prompt, execution.context_payload))],
            )
        ]

        continue_conversation = True
        while continue_conversation and execution.current_iteration < max_iterations:
            self._check_cancelled(execution)

            execution.current_iteration += 1
            iteration = execution.current_iteration
            self._add_step(
                execution,
                StepType.ITERATION_START,
                {"iteration": iteration, "max_iterations": max_iterations},
            )
            self._emit(
                execution,
                "iteration_start",
                f"Starting iteration {iteration}/{max_iterations}...",
                max_iterations=max_iterations,
            )

            self._add_step(
                execution,
                StepType.MODEL_REQUEST,
                {
                    "model_id": execution.model_id,
                    "message_count": len(execution.messages),
                    "tool_count": len(tool_definitions),
                },
            )
            self._emit(execution, "model_request", f"Sending request to {execution.model_id}...")

            response = await self._model_client.converse(
                execution.model_id,
                execution.system_prompt,
                list(execution.messages),
                tool_definitions,
            )
            stop_reason = response.stop_reason

            self._add_step(
                execution,
                StepType.LLM_RESPONSE,
                {
                    "stop_reason": stop_reason,
                    "usage": response.usage.model_dump(),
                    "has_tool_use": stop_reason == StopReason.TOOL_USE,
                },
            )
            execution.messages.append(response.message)

            if stop_reason == StopReason.END_TURN:
                final_text = response.message.text()
                execution.results.final_response = final_text
                continue_conversation = False

                self._emit(
                    execution,
                    "completion",
                    f"Model completed response\n\n{final_text}",
                    final_response=final_text,
                )
                self._add_step(
                    execution,
                    StepType.COMPLETION,
                    {"final_response": final_text, "reason": "Model completed response"},
                )

            elif stop_reason == StopReason.TOOL_USE:
                tool_uses = response.message.tool_uses()
                if not tool_uses:
                    self._add_step(
                        execution,
                        StepType.ERROR,
                        {"error": "Model requested tool use without any tool-use blocks",
                         "stop_reason": stop_reason},
                    )
                    continue_conversation = False
                    continue

                self._emit(
                    execution,
                    "tool_requests",
                    f"Model requested {len(tool_uses)} tool(s): {', '.join(t.name for t in tool_uses)}",
                    tool_requests=[
                        {"name": t.name, "tool_use_id": t.tool_use_id, "parameter_count": len(t.input)}
                        for t in tool_uses
                    ],
                )

                results = await self._dispatch_tools(execution, tool_uses)

                execution.messages.append(
                    Message(role="user", content=[self._tool_result_block(result) for result in results])
                )
                execution.results.tool_executions.extend(results)
                execution.results.total_tool_calls += len(results)

            else:
                logger.warning(
                    f"Execution {execution.execution_id} stopped on unexpected stop reason: {stop_reason}"
                )
                self._add_step(
                    execution,
                    StepType.ERROR,
                    {"error": f"Unexpected stop reason: {stop_reason}", "stop_reason": stop_reason},
                )
                continue_conversation = False

        if continue_conversation:
            self._add_step(
                execution,
                StepType.ITERATION_LIMIT_REACHED,
                {"max_iterations": max_iterations, "reason": "Maximum iteration limit reached"},
            )
            partial = self._recover_partial_response(execution.messages)
            if partial:
                execution.results.final_response = partial + TRUNCATION_MARKER
            logger.warning(f"Execution {execution.execution_id} hit the iteration limit ({max_iterations})")

    async def _dispatch_tools(
        self, execution: Execution, tool_uses: list[ToolUseBlock]
    ) -> list[ToolExecutionResult]:
        configuration = execution.tool_configuration
        context = ExecutionContext(
            execution_id=execution.execution_id,
            tool_configuration=configuration,
            scenario_id=execution.options.scenario_id,
            dataset_context=execution.options.dataset_context,
            iteration=execution.current_iteration,
        )
        parallel = execution.options.parallel_tool_calls
        if parallel is None:
            parallel = self._settings.parallel_tool_calls

        if parallel and len(tool_uses) > 1:
            self._check_cancelled(execution)
            for tool_use in tool_uses:
                self._before_tool(execution, tool_use)
            results = list(
                await asyncio.gather(
                    *(self._dispatcher.execute(tool_use, configuration, context) for tool_use in tool_uses)
                )
            )
            for result in results:
                self._after_tool(execution, result)
            return results

        results = []
        for tool_use in tool_uses:
            self._check_cancelled(execution)
            self._before_tool(execution, tool_use)
            result = await self._dispatcher.execute(tool_use, configuration, context)
            self._after_tool(execution, result)
            results.append(result)
        return results

    def _before_tool(self, execution: Execution, tool_use: ToolUseBlock) -> None:
        self._add_step(
            execution,
            StepType.TOOL_CALL,
            {"tool_name": tool_use.name, "tool_use_id": tool_use.tool_use_id, "parameters": tool_use.input},
        )
        self._emit(
            execution,
            "tool_execution",
            f"Executing {tool_use.name}...",
            tool_name=tool_use.name,
            tool_use_id=tool_use.tool_use_id,
        )

    def _after_tool(self, execution: Execution, result: ToolExecutionResult) -> None:
        content: dict[str, Any] = {
            "tool_name": result.tool_name,
            "tool_use_id": result.tool_use_id,
            "success": result.success,
        }
        if result.success:
            content["result"] = to_jsonable_python(result.result, fallback=str)
            self._emit(
                execution,
                "tool_result",
                f"{result.tool_name} completed successfully",
                tool_name=result.tool_name,
                tool_use_id=result.tool_use_id,
                success=True,
                result=result.result,
            )
        else:
            content["error"] = result.error
            self._emit(
                execution,
                "tool_error",
                f"{result.tool_name} failed: {result.error}",
                tool_name=result.tool_name,
                tool_use_id=result.tool_use_id,
                success=False,
                error=result.error,
            )
        self._add_step(execution, StepType.TOOL_RESULT, content)

    # ------------------------------------------------------------------
    # Finalisation
    # ------------------------------------------------------------------

    async def _finalize(self, execution: Execution) -> ExecutionResult:
        if execution.end_time is None:
            execution.end_time = datetime.now(UTC)
            execution.total_duration = (execution.end_time - execution.start_time).total_seconds()
            execution.results.iteration_count = execution.current_iteration

            try:
                if self._tracker.is_active(execution.execution_id):
                    await self._tracker.complete_execution(
                        execution.execution_id,
                        {
                            "status": str(execution.status),
                            "results": to_jsonable_python(execution.results, fallback=str),
                            "errors": to_jsonable_python(execution.errors, fallback=str),
                            "current_iteration": execution.current_iteration,
                        },
                    )
            except WorkflowNotFoundError:
                logger.debug(f"Workflow {execution.execution_id} already completed")
            except Exception as e:
                logger.error(f"Failed to record workflow for {execution.execution_id}: {e}", exc_info=True)
            finally:
                self._registry.finish(execution.execution_id)

            logger.info(
                f"Execution {execution.execution_id} {execution.status}: "
                f"iterations={execution.current_iteration}, "
                f"tool_calls={execution.results.total_tool_calls}, "
                f"duration={execution.total_duration:.2f}s"
            )

        return ExecutionResult(
            execution_id=execution.execution_id,
            success=execution.status == ExecutionStatus.COMPLETED,
            status=execution.status,
            results=execution.results.model_copy(deep=True),
            workflow=[step.model_copy(deep=True) for step in execution.workflow],
            iteration_count=execution.current_iteration,
            total_duration=execution.total_duration or 0.0,
            tool_call_count=execution.results.total_tool_calls,
            error=execution.errors[-1].message if execution.errors else None,
        )
