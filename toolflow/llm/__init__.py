"""
LLM Layer.

Message model shared by every component, the provider-agnostic Model Client
(LiteLLM) and the conversation orchestrator that drives tool-use loops.

    ConversationOrchestrator
          ↓ converse(model_id, system_prompt, messages, tools)
    ModelClient  →  ModelResponse(stop_reason, message, usage)

The orchestrator lives in toolflow.llm.orchestrator and is imported from
there; it depends on the execution and workflow packages, which in turn
import the message model from this package.
"""

from toolflow.llm.client import LiteLLMModelClient
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

__all__ = [
    "LiteLLMModelClient",
    "LLMError",
    "Message",
    "ModelClient",
    "ModelResponse",
    "StopReason",
    "TextBlock",
    "TokenUsage",
    "ToolResultBlock",
    "ToolUseBlock",
]
