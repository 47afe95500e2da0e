"""LLM backend interface, wire-neutral message types and backend factory."""

import base64
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

from turnkeeper.config import ModelConfig
from turnkeeper.exceptions import ConfigurationError
from turnkeeper.logging import get_logger

log = get_logger(__name__)


class BackendFamily(str, Enum):
    """Backend families, selected explicitly in configuration."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"

    @property
    def display_name(self) -> str:
        return {
            BackendFamily.ANTHROPIC: "Anthropic Messages",
            BackendFamily.OPENAI: "OpenAI-compatible Chat Completions",
        }[self]


class ToolProtocol(str, Enum):
    """Tool-calling protocols spoken by backend families."""

    TYPED_SCHEMA = "typed_schema"  # protocol A: pre-wrapped executors with a typed schema
    JSON_SCHEMA = "json_schema"  # protocol B: JSON-Schema function calling


@dataclass
class ImageAttachment:
    """An image sent alongside a user message."""

    media_type: str
    data: bytes

    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.b64()}"


@dataclass
class ToolCall:
    """A tool call requested by the model.

    ``arguments`` is the raw argument text exactly as the backend sent it.
    """

    id: str
    name: str
    arguments: str = "{}"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    is_error: bool = False
    images: list[ImageAttachment] = field(default_factory=list)


@dataclass
class LLMResponse:
    """Non-streamed response from a backend."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolCallDelta:
    """A fragment of a streamed tool call, keyed by call index."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class StreamEvent:
    """One event of a streamed response: a text delta, a tool-call fragment, or the end."""

    text: str | None = None
    tool_call: ToolCallDelta | None = None
    done: bool = False
    usage: dict[str, int] = field(default_factory=dict)


class ToolCallAccumulator:
    """Reassemble streamed tool-call fragments by call index."""

    def __init__(self):
        self._calls: dict[int, dict[str, Any]] = {}

    def add(self, delta: ToolCallDelta) -> None:
        entry = self._calls.setdefault(delta.index, {"id": None, "name": "", "arguments": []})
        if delta.id:
            entry["id"] = delta.id
        if delta.name:
            entry["name"] += delta.name
        if delta.arguments:
            entry["arguments"].append(delta.arguments)

    def __len__(self) -> int:
        return len(self._calls)

    def calls(self) -> list[ToolCall]:
        """Return runnable tool calls in index order.

        A call whose arguments never arrived gets ``"{}"``; both protocols
        stream nothing for a tool invoked without arguments.
        """
        result: list[ToolCall] = []
        for index in sorted(self._calls):
            entry = self._calls[index]
            raw = "".join(entry["arguments"])
            result.append(ToolCall(
                id=entry["id"] or f"call_{index}",
                name=entry["name"],
                arguments=raw if raw.strip() else "{}",
            ))
        return result


def orphan_tool_call_ids(messages: list[Message]) -> set[str]:
    """Return ids of tool messages with no matching call in a preceding assistant message.

    Compaction keeps the recent suffix verbatim, so the suffix can start with a
    tool result whose call was summarized away. Backends send those as plain
    user text instead of protocol-level tool results.
    """
    seen: set[str] = set()
    orphans: set[str] = set()
    for msg in messages:
        if msg.role == "assistant":
            seen.update(tc.id for tc in msg.tool_calls)
        elif msg.role == "tool" and msg.tool_call_id not in seen:
            orphans.add(str(msg.tool_call_id))
    return orphans


class ChatBackend(ABC):
    """Abstract chat capability shared by all backend families."""

    family: BackendFamily
    protocol: ToolProtocol
    model: str = ""
    supports_images: bool = False

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response as text deltas and tool-call fragments."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[Any] | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a complete, non-streamed response."""

    async def close(self) -> None:
        """Release transport resources."""
        return None


def _resolve_api_key(family: BackendFamily, configured: str) -> str:
    if configured:
        return configured
    env_name = "ANTHROPIC_API_KEY" if family is BackendFamily.ANTHROPIC else "OPENAI_API_KEY"
    return os.environ.get(env_name, "")


def create_backend(config: ModelConfig) -> ChatBackend:
    """Create the backend for the configured family.

    Args:
        config: Model configuration section

    Returns:
        Configured ChatBackend instance

    Raises:
        ConfigurationError if the family is unknown or credentials are missing
    """
    try:
        family = BackendFamily(str(config.provider).strip().lower())
    except ValueError:
        raise ConfigurationError(
            f"Unknown backend provider '{config.provider}'. Use 'anthropic' or 'openai'."
        )

    api_key = _resolve_api_key(family, config.api_key)
    log.info("Creating backend", family=family.value, model=config.model)

    if family is BackendFamily.ANTHROPIC:
        from turnkeeper.llm.anthropic_backend import ANTHROPIC_BASE_URL, AnthropicBackend

        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for the anthropic backend")
        return AnthropicBackend(
            model=config.model,
            api_key=api_key,
            base_url=config.base_url or ANTHROPIC_BASE_URL,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            supports_images=config.supports_images,
        )

    from turnkeeper.llm.openai_backend import OPENAI_BASE_URL, OpenAIBackend

    base_url = config.base_url or OPENAI_BASE_URL
    # Local OpenAI-compatible servers (e.g. Ollama /v1) run without a key.
    if not api_key and base_url == OPENAI_BASE_URL:
        raise ConfigurationError("OPENAI_API_KEY is required for the openai backend")
    return OpenAIBackend(
        model=config.model,
        api_key=api_key or None,
        base_url=base_url,
        temperature=config.temperature,
        timeout=config.timeout,
        supports_images=config.supports_images,
    )


__all__ = [
    "BackendFamily",
    "ChatBackend",
    "ImageAttachment",
    "LLMResponse",
    "Message",
    "StreamEvent",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallDelta",
    "ToolProtocol",
    "create_backend",
    "orphan_tool_call_ids",
]
