"""
LiteLLM-backed Model Client.

LiteLLM speaks the OpenAI chat format for every provider, so this client
translates the orchestrator's block-format history into chat messages:

    user TextBlocks          → {"role": "user", "content": "..."}
    assistant turn           → {"role": "assistant", "content": ..., "tool_calls": [...]}
    user ToolResultBlocks    → one {"role": "tool", "tool_call_id": ..., "content": ...} each

and maps the response's ``finish_reason`` back onto StopReason.
"""

from __future__ import annotations

import json
from typing import Any

from litellm import acompletion

from toolflow.config.logging import get_logger
from toolflow.config.settings import LLMSettings
from toolflow.llm.models import (
    LLMError,
    Message,
    ModelClient,
    ModelResponse,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)

logger = get_logger(__name__)

_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "tool_use": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "max_tokens": StopReason.MAX_TOKENS,
    "content_filter": StopReason.CONTENT_FILTERED,
}


class LiteLLMModelClient(ModelClient):
    """
    Model Client that routes every call through ``litellm.acompletion``.

    Args:
        settings: LLM configuration (max_tokens, temperature, api_key)
    """

    def __init__(self, settings: LLMSettings):
        self._settings = settings

    @staticmethod
    def _tool_definitions(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Wrap flat tool definitions in the OpenAI function-tool envelope."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["input_schema"],
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _to_chat_messages(system_prompt: str | None, messages: list[Message]) -> list[dict[str, Any]]:
        chat: list[dict[str, Any]] = []
        if system_prompt and system_prompt.strip():
            chat.append({"role": "system", "content": system_prompt})

        for message in messages:
            if message.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": message.text() or None}
                tool_uses = message.tool_uses()
                if tool_uses:
                    entry["tool_calls"] = [
                        {
                            "id": block.tool_use_id,
                            "type": "function",
                            "function": {
                                "name": block.name,
                                "arguments": json.dumps(block.input),
                            },
                        }
                        for block in tool_uses
                    ]
                chat.append(entry)
                continue

            results = message.tool_results()
            for block in results:
                chat.append({
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": block.content,
                })
            text = message.text()
            if text or not results:
                chat.append({"role": "user", "content": text})

        return chat

    @staticmethod
    def _parse_arguments(raw: str | None, tool_name: str) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Model sent malformed arguments for '{tool_name}': {raw!r}")
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def converse(
        self,
        model_id: str,
        system_prompt: str | None,
        messages: list[Message],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        if not self._settings.api_key:
            raise LLMError("API key not configured. Set LLM__API_KEY in your .env file.")

        call_kwargs: dict[str, Any] = {
            "model": model_id,
            "messages": self._to_chat_messages(system_prompt, messages),
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
            "api_key": self._settings.api_key,
        }
        if tools:
            call_kwargs["tools"] = self._tool_definitions(tools)

        try:
            response = await acompletion(**call_kwargs)
        except Exception as e:
            raise LLMError(f"LLM API call failed: {e}", cause=e) from e

        choice = response.choices[0]
        assistant_message = choice.message

        content: list[TextBlock | ToolUseBlock | ToolResultBlock] = []
        if assistant_message.content:
            content.append(TextBlock(text=assistant_message.content))
        for tool_call in assistant_message.tool_calls or []:
            content.append(
                ToolUseBlock(
                    tool_use_id=tool_call.id,
                    name=tool_call.function.name,
                    input=self._parse_arguments(tool_call.function.arguments, tool_call.function.name),
                )
            )

        finish_reason = choice.finish_reason or ""
        stop_reason = str(_FINISH_REASONS.get(finish_reason, finish_reason))
        # Some providers report "stop" even when the turn carries tool calls
        if assistant_message.tool_calls and stop_reason == StopReason.END_TURN:
            stop_reason = str(StopReason.TOOL_USE)

        usage = TokenUsage()
        if getattr(response, "usage", None) is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
            )

        return ModelResponse(
            stop_reason=stop_reason,
            message=Message(role="assistant", content=content),
            usage=usage,
            model=getattr(response, "model", None),
        )
