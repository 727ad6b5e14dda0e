"""
Toolflow CLI entry point.

Runs tool-use conversations from the command line and inspects the stored
workflow history.
"""

import argparse
import asyncio
import importlib
import json
import sys
from contextlib import AsyncExitStack
from datetime import timedelta
from pathlib import Path

from toolflow import __version__
from toolflow.config.logging import get_logger, setup_logging
from toolflow.config.settings import Settings, load_settings
from toolflow.execution import ExecutionOptions, ExecutionRegistry, StreamEvent
from toolflow.llm import LiteLLMModelClient
from toolflow.llm.orchestrator import ConversationOrchestrator
from toolflow.tools import ToolConfiguration, ToolConfigurationError, ToolDispatcher, ToolRegistry
from toolflow.tools.mcp_adapter import MCPToolAdapter
from toolflow.workflow import (
    InMemoryWorkflowStore,
    JsonFileWorkflowStore,
    WorkflowFilters,
    WorkflowStore,
    WorkflowStoreError,
    WorkflowTracker,
)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="toolflow",
        description="Run LLM tool-use conversations and inspect their workflow history",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Toolflow {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("config", help="Show current configuration")

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run one conversation to completion",
    )
    run_parser.add_argument("prompt", help="User prompt")
    run_parser.add_argument(
        "--model",
        default=None,
        help="LiteLLM model string (default: LLM__MODEL from config)",
    )
    run_parser.add_argument("--system", default=None, help="System prompt text")
    run_parser.add_argument(
        "--system-file",
        type=Path,
        default=None,
        help="Read the system prompt from a file",
    )
    run_parser.add_argument(
        "--context-file",
        type=Path,
        default=None,
        help="JSON or text file appended to the prompt as data to analyze",
    )
    run_parser.add_argument(
        "--tools",
        type=Path,
        default=None,
        help="Tool configuration JSON file",
    )
    run_parser.add_argument(
        "--handlers",
        default=None,
        help="Module exposing register_handlers(registry), e.g. myproject.handlers",
    )
    run_parser.add_argument(
        "--scenario",
        default=None,
        help="Scenario id for handler lookup (default: derived from the tool configuration)",
    )
    run_parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Bound on model calls (default: ORCHESTRATOR__MAX_ITERATIONS)",
    )
    run_parser.add_argument(
        "--parallel",
        action="store_true",
        help="Dispatch the tool calls of one model turn concurrently",
    )
    run_parser.add_argument(
        "--stream",
        action="store_true",
        help="Print progress events as they happen",
    )

    # Status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show a stored workflow and its steps",
    )
    status_parser.add_argument("execution_id", help="Execution id, e.g. exec_3f2a...")
    status_parser.add_argument(
        "--steps",
        action="store_true",
        help="Print every step's content",
    )

    # History command
    history_parser = subparsers.add_parser(
        "history",
        help="List stored workflows, newest first",
    )
    history_parser.add_argument(
        "--status",
        choices=["completed", "error", "cancelled"],
        default=None,
        help="Only workflows with this status",
    )
    history_parser.add_argument("--model", default=None, help="Only workflows for this model")
    history_parser.add_argument("--limit", type=int, default=20, help="Page size (default: 20)")
    history_parser.add_argument("--offset", type=int, default=0, help="Page offset (default: 0)")

    # Stats command
    stats_parser = subparsers.add_parser(
        "stats",
        help="Aggregate statistics over stored workflows",
    )
    stats_parser.add_argument("--model", default=None, help="Only workflows for this model")

    # Cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Apply retention to stored workflows",
    )
    cleanup_parser.add_argument(
        "--max-age-days",
        type=int,
        default=None,
        help="Delete workflows older than this (default: WORKFLOW__RETENTION_MAX_AGE_DAYS)",
    )
    cleanup_parser.add_argument(
        "--max-count",
        type=int,
        default=None,
        help="Keep at most this many workflows (default: WORKFLOW__RETENTION_MAX_COUNT)",
    )

    return parser


def build_store(settings: Settings) -> WorkflowStore:
    """Workflow store selected by WORKFLOW__STORE_BACKEND."""
    if settings.workflow.store_backend == "memory":
        return InMemoryWorkflowStore()
    return JsonFileWorkflowStore(settings.workflow.store_path)


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("\n=== Toolflow Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nLLM Model: {settings.llm.model}")
    logger.info(f"LLM API Key: {'Set' if settings.llm.api_key else 'Not set'}")
    logger.info(f"LLM Max Tokens: {settings.llm.max_tokens}")
    logger.info(f"\nMax Iterations: {settings.orchestrator.max_iterations}")
    logger.info(f"Parallel Tool Calls: {settings.orchestrator.parallel_tool_calls}")
    logger.info(f"\nTool Timeout: {settings.tools.timeout or 'None'}")
    logger.info(f"MCP Server: {settings.tools.mcp_server_command or 'None'}")
    logger.info(f"\nWorkflow Store: {settings.workflow.store_backend} ({settings.workflow.store_path})")
    logger.info(
        f"Workflow Retention: {settings.workflow.retention_max_age_days} days, "
        f"{settings.workflow.retention_max_count} records"
    )
    return 0


def _read_context(path: Path):
    text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _print_event(event: StreamEvent) -> None:
    print(f"[{event.iteration}] {event.type}: {event.content}")


async def cmd_run(args, settings: Settings) -> int:
    """
    Run one conversation and print its final response.

    Returns:
        Exit code (0 when the execution completed, 1 otherwise)
    """
    logger = get_logger(__name__)

    tool_configuration = None
    if args.tools:
        try:
            tool_configuration = ToolConfiguration.from_dict(
                json.loads(args.tools.read_text(encoding="utf-8"))
            )
        except (OSError, json.JSONDecodeError, ToolConfigurationError) as e:
            logger.error(f"Could not load tool configuration {args.tools}: {e}")
            return 1

    system_prompt = args.system
    if args.system_file:
        try:
            system_prompt = args.system_file.read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Could not read system prompt {args.system_file}: {e}")
            return 1

    context_payload = None
    if args.context_file:
        try:
            context_payload = _read_context(args.context_file)
        except OSError as e:
            logger.error(f"Could not read context file {args.context_file}: {e}")
            return 1

    registry = ToolRegistry()
    if args.handlers:
        try:
            module = importlib.import_module(args.handlers)
            module.register_handlers(registry)
        except (ImportError, AttributeError) as e:
            logger.error(f"Could not load handlers from {args.handlers}: {e}")
            return 1
        logger.info(f"Registered {len(registry)} handler(s) from {args.handlers}")

    if not settings.llm.api_key:
        logger.warning("LLM API key not set (LLM__API_KEY). Model calls will fail.")

    scenario_id = args.scenario or (tool_configuration.scenario() if tool_configuration else None)

    try:
        async with AsyncExitStack() as stack:
            if settings.tools.mcp_server_command:
                adapter = await stack.enter_async_context(
                    MCPToolAdapter(settings.tools.mcp_server_command, settings.tools.mcp_server_args)
                )
                if tool_configuration is None:
                    scenario_id = scenario_id or "mcp"
                    tool_configuration = await adapter.tool_configuration("mcp-tools", scenario_id)
                await adapter.register_handlers(registry, scenario_id or "mcp")

            if tool_configuration is not None:
                missing = registry.check_configuration(tool_configuration, scenario_id)
                if missing:
                    logger.warning(f"No handler registered for: {', '.join(missing)}")

            tracker = await stack.enter_async_context(WorkflowTracker(build_store(settings)))
            execution_registry = ExecutionRegistry(
                max_history_age=timedelta(seconds=settings.orchestrator.history_max_age_seconds),
                max_history_count=settings.orchestrator.history_max_count,
            )
            orchestrator = ConversationOrchestrator(
                model_client=LiteLLMModelClient(settings.llm),
                dispatcher=ToolDispatcher(registry, timeout=settings.tools.timeout),
                tracker=tracker,
                execution_registry=execution_registry,
                settings=settings.orchestrator,
            )

            result = await orchestrator.execute(
                model_id=args.model or settings.llm.model,
                system_prompt=system_prompt,
                user_prompt=args.prompt,
                context_payload=context_payload,
                tool_configuration=tool_configuration,
                options=ExecutionOptions(
                    max_iterations=args.max_iterations,
                    scenario_id=scenario_id,
                    parallel_tool_calls=True if args.parallel else None,
                    on_stream_update=_print_event if args.stream else None,
                ),
            )
    except (ValueError, WorkflowStoreError) as e:
        logger.error(f"Run failed: {e}")
        return 1

    print(f"\n=== {result.execution_id} ({result.status}) ===")
    if result.results.final_response:
        print(result.results.final_response)
    if result.error:
        print(f"\nError: {result.error}", file=sys.stderr)
    print(
        f"\nIterations: {result.iteration_count}  "
        f"Tool calls: {result.tool_call_count}  "
        f"Duration: {result.total_duration:.2f}s"
    )
    return 0 if result.success else 1


async def cmd_status(args, settings: Settings) -> int:
    """Print one stored workflow."""
    async with WorkflowTracker(build_store(settings)) as tracker:
        workflow = await tracker.load_workflow(args.execution_id)

    if workflow is None:
        print(f"Workflow not found: {args.execution_id}", file=sys.stderr)
        return 1

    print(f"\n=== {workflow.execution_id} ===")
    print(f"Status: {workflow.status}")
    print(f"Model: {workflow.model_id}")
    print(f"Started: {workflow.start_time.isoformat()}")
    if workflow.total_duration is not None:
        print(f"Duration: {workflow.total_duration:.2f}s")
    print(f"Iterations: {workflow.current_iteration}/{workflow.max_iterations}")
    print(f"Steps: {len(workflow.steps)}")

    for step in workflow.steps:
        print(f"  [{step.iteration}] {step.type}")
        if args.steps:
            print(f"      {json.dumps(step.content, default=str)}")

    for error in workflow.errors:
        print(f"Error: {error.get('message', error)}", file=sys.stderr)
    return 0


async def cmd_history(args, settings: Settings) -> int:
    """List stored workflows, newest first."""
    filters = WorkflowFilters(
        status=args.status,
        model_id=args.model,
        limit=args.limit,
        offset=args.offset,
    )
    async with WorkflowTracker(build_store(settings)) as tracker:
        page = await tracker.get_workflow_history(filters)

    if not page.workflows:
        print("No stored workflows.")
        return 0

    for workflow in page.workflows:
        duration = f"{workflow.total_duration:.2f}s" if workflow.total_duration is not None else "-"
        print(
            f"{workflow.execution_id}  {str(workflow.status):<10} "
            f"{workflow.start_time:%Y-%m-%d %H:%M:%S}  {duration:>8}  {workflow.model_id or '-'}"
        )
    shown_to = args.offset + len(page.workflows)
    print(f"\nShowing {args.offset + 1}-{shown_to} of {page.total}" + (" (more available)" if page.has_more else ""))
    return 0


async def cmd_stats(args, settings: Settings) -> int:
    """Print aggregate statistics."""
    async with WorkflowTracker(build_store(settings)) as tracker:
        stats = await tracker.get_workflow_statistics(WorkflowFilters(model_id=args.model))

    print("\n=== Workflow Statistics ===")
    print(f"Total: {stats.total_workflows}")
    print(f"Completed: {stats.completed_workflows}")
    print(f"Error: {stats.error_workflows}")
    print(f"Cancelled: {stats.cancelled_workflows}")
    print(f"Average duration: {stats.average_duration:.2f}s")
    print(f"Average iterations: {stats.average_iterations:.2f}")
    print(f"Total tool calls: {stats.total_tool_calls}")
    if stats.model_breakdown:
        print("\nBy model:")
        for model_id, count in sorted(stats.model_breakdown.items()):
            print(f"  {model_id}: {count}")
    return 0


async def cmd_cleanup(args, settings: Settings) -> int:
    """Delete stored workflows past the retention limits."""
    max_age_days = args.max_age_days if args.max_age_days is not None else settings.workflow.retention_max_age_days
    max_count = args.max_count if args.max_count is not None else settings.workflow.retention_max_count

    async with WorkflowTracker(build_store(settings)) as tracker:
        report = await tracker.cleanup_workflows(max_age=timedelta(days=max_age_days), max_count=max_count)

    print(f"Deleted {report.deleted_count} workflow(s); {report.remaining_count} remaining.")
    return 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    # Override log level if specified
    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings)

    commands = {
        "run": cmd_run,
        "status": cmd_status,
        "history": cmd_history,
        "stats": cmd_stats,
        "cleanup": cmd_cleanup,
    }

    if args.command == "config":
        return cmd_config(settings)
    if args.command in commands:
        try:
            return asyncio.run(commands[args.command](args, settings))
        except WorkflowStoreError as e:
            get_logger(__name__).error(f"Workflow store error: {e}")
            return 1

    # Default: show help
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
