"""
Conversation data structures and the Model Client contract.

Messages are kept in a provider-neutral block format:

    {"role": "user",      "content": [TextBlock]}
    {"role": "assistant", "content": [TextBlock, ToolUseBlock, ...]}
    {"role": "user",      "content": [ToolResultBlock, ...]}

A ModelClient translates this history into whatever wire format its endpoint
speaks and returns a ModelResponse with a normalized stop reason.
"""

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class StopReason(StrEnum):
    """Normalized reasons a model gives for ending its turn."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    CONTENT_FILTERED = "content_filtered"


class TextBlock(BaseModel):
    """Plain text produced by the user or the model."""

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A model request to invoke a named tool with arguments."""

    type: Literal["tool_use"] = "tool_use"
    tool_use_id: str = Field(description="Identifier the matching tool result must echo")
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The outcome of one tool invocation, sent back to the model."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    status: Literal["success", "error"] = "success"


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One conversation turn."""

    role: Literal["user", "assistant"]
    content: list[ContentBlock] = Field(default_factory=list)

    def text(self) -> str:
        """Concatenate the text blocks of this turn."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        """Tool-use blocks of this turn, in the order the model emitted them."""
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        """Tool-result blocks of this turn, in order."""
        return [block for block in self.content if isinstance(block, ToolResultBlock)]


class TokenUsage(BaseModel):
    """Token accounting for one model call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ModelResponse(BaseModel):
    """
    Result of one Model Client call.

    ``stop_reason`` is a plain string: known values compare equal to the
    StopReason members, unknown provider values pass through untouched so
    the orchestrator can report them.
    """

    stop_reason: str
    message: Message
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str | None = Field(None, description="Model name reported by the provider")


class LLMError(Exception):
    """Raised when a model call fails or the client is misconfigured."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ModelClient(ABC):
    """
    Abstract Model Client.

    Transport, authentication and retries are the client's concern; the
    orchestrator only sees request/response.
    """

    @abstractmethod
    async def converse(
        self,
        model_id: str,
        system_prompt: str | None,
        messages: list[Message],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        """
        Send the conversation to the model.

        Args:
            model_id: Provider model identifier
            system_prompt: System prompt, or None/empty for none
            messages: Full conversation history in block format
            tools: Tool definitions: name, description, input_schema

        Returns:
            The model's turn and stop reason

        Raises:
            LLMError: If the call fails
        """
        pass
