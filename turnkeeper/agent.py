"""Agent turn loop: send, maybe run tool calls, repeat until a plain answer."""

import asyncio
import inspect
import re
from collections import OrderedDict
from collections.abc import Hashable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import structlog

from turnkeeper.compaction import compact_messages
from turnkeeper.config import Config, get_config
from turnkeeper.context_limits import needs_compaction
from turnkeeper.conversation import ConversationHistory
from turnkeeper.llm import (
    ChatBackend,
    ImageAttachment,
    Message,
    ToolCall,
    ToolCallAccumulator,
    ToolProtocol,
)
from turnkeeper.logging import get_logger
from turnkeeper.prompt import SystemPromptCache, default_prompt_loader
from turnkeeper.tools.loop_detector import LoopDetector
from turnkeeper.tools.registry import ToolRegistry, ToolResult, WrappedTool, get_tool_registry

log = get_logger(__name__)

TURN_ERROR_REPLY = "Sorry, I hit an error processing that. Try again in a moment."
CEILING_FALLBACK_REPLY = "Sorry, I ran out of processing turns."
MAX_TRACKED_CONVERSATIONS = 256
CEILING_SUMMARY_REQUEST = (
    "You've reached the tool-call limit for this request. Do not call any more tools. "
    "Summarize what you have accomplished so far and what work remains, so the user "
    "can decide how to continue."
)

_THINK_BLOCK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)

ProgressCallback = Callable[[str], Any]


def strip_thinking(text: str) -> str:
    """Remove reasoning segments, including an unterminated trailing one."""
    cleaned = _THINK_BLOCK_RE.sub("", text or "")
    open_idx = cleaned.find("<think>")
    if open_idx != -1:
        cleaned = cleaned[:open_idx]
    return cleaned.strip()


class TurnState(str, Enum):
    """States of one turn sequence."""

    AWAIT_MODEL = "await_model"
    EXECUTE_TOOLS = "execute_tools"
    DONE = "done"
    CEILING_REACHED = "ceiling_reached"
    FAILED = "failed"


@dataclass
class TurnStats:
    """Counters for the most recent turn sequence of a conversation."""

    state: TurnState = TurnState.AWAIT_MODEL
    backend_calls: int = 0
    tool_calls: int = 0
    compactions: int = 0


class Agent:
    """Main agent orchestrator."""

    def __init__(
        self,
        backend: ChatBackend,
        registry: ToolRegistry | None = None,
        loop_detector: LoopDetector | None = None,
        config: Config | None = None,
        history: ConversationHistory | None = None,
        prompt_cache: SystemPromptCache | None = None,
        max_tool_turns: int | None = None,
    ):
        """Initialize the agent.

        Args:
            backend: Active chat backend
            registry: Tool registry; defaults to the global registry
            loop_detector: Stuck-cycle detector; defaults to one built from config
            config: Configuration; defaults to the global config
            history: Short-term conversation history store
            prompt_cache: System prompt cache; defaults to the configured prompt
            max_tool_turns: Override for the tool turn ceiling
        """
        cfg = config or get_config()
        self.config = cfg
        self.backend = backend
        self.tools = registry or get_tool_registry()
        self.loop_detector = loop_detector or LoopDetector(
            threshold=cfg.agent.loop_threshold,
            fingerprint_chars=cfg.agent.fingerprint_chars,
        )
        self.history = history or ConversationHistory(
            max_messages=cfg.agent.history_max_messages,
            user_label=cfg.agent.user_label,
        )
        self.prompt_cache = prompt_cache or SystemPromptCache(
            default_prompt_loader(cfg.agent, backend),
            ttl_seconds=cfg.agent.prompt_cache_seconds,
        )
        self.max_tool_turns = max(1, int(max_tool_turns or cfg.agent.max_tool_turns))
        self.include_conditional_tools = cfg.tools.include_conditional
        self.last_stats: OrderedDict[Hashable, TurnStats] = OrderedDict()
        self._callback_tasks: set[asyncio.Future[Any]] = set()

    def invalidate_cache(self) -> None:
        """Reload the system prompt on the next call and forget all loop fingerprints."""
        self.prompt_cache.invalidate()
        self.loop_detector.reset(all_keys=True)
        log.info("Prompt cache invalidated")

    def reset_conversation(self, conversation_id: Hashable) -> None:
        """Drop short-term history and loop state for one conversation."""
        self.history.clear(conversation_id)
        self.loop_detector.reset(conversation_id)

    async def run_turn(
        self,
        conversation_id: Hashable,
        user_message: str,
        on_chunk: ProgressCallback | None = None,
        image: ImageAttachment | None = None,
    ) -> str:
        """Run one turn sequence and return the final text.

        Never raises for backend or tool failures; every path returns a string.
        """
        stats = TurnStats()
        self._record_stats(conversation_id, stats)
        self.loop_detector.reset(conversation_id)

        with structlog.contextvars.bound_contextvars(conversation=str(conversation_id)):
            try:
                messages = await self._build_initial_messages(conversation_id, user_message, image)
                reply = await self._run_loop(conversation_id, messages, on_chunk, stats)
            except Exception as e:
                log.error("Turn sequence failed", error=str(e), error_type=type(e).__name__)
                stats.state = TurnState.FAILED
                reply = TURN_ERROR_REPLY

            log.info(
                "Turn sequence finished",
                state=stats.state.value,
                backend_calls=stats.backend_calls,
                tool_calls=stats.tool_calls,
                compactions=stats.compactions,
            )

        self.loop_detector.reset(conversation_id)
        if stats.state is not TurnState.FAILED:
            self.history.add(conversation_id, "user", user_message)
            self.history.add(conversation_id, "assistant", reply)
        return reply

    def _record_stats(self, conversation_id: Hashable, stats: TurnStats) -> None:
        self.last_stats[conversation_id] = stats
        self.last_stats.move_to_end(conversation_id)
        while len(self.last_stats) > MAX_TRACKED_CONVERSATIONS:
            self.last_stats.popitem(last=False)

    async def _build_initial_messages(
        self,
        conversation_id: Hashable,
        user_message: str,
        image: ImageAttachment | None,
    ) -> list[Message]:
        system_prompt = await self.prompt_cache.get()
        context = self.history.format_for_prompt(conversation_id)
        content = f"{context}\n\n{user_message}" if context else user_message

        images: list[ImageAttachment] = []
        if image is not None:
            if self.backend.supports_images:
                images.append(image)
            else:
                log.warning("Backend does not accept images, dropping attachment", model=self.backend.model)

        return [
            Message(role="system", content=system_prompt),
            Message(role="user", content=content, images=images),
        ]

    async def _run_loop(
        self,
        conversation_id: Hashable,
        messages: list[Message],
        on_chunk: ProgressCallback | None,
        stats: TurnStats,
    ) -> str:
        tools = self.tools.render(
            self.backend.protocol,
            include_conditional=self.include_conditional_tools,
            loop_detector=self.loop_detector,
            conversation_key=conversation_id,
        )
        wrapped: dict[str, WrappedTool] = (
            {tool.name: tool for tool in tools}
            if self.backend.protocol is ToolProtocol.TYPED_SCHEMA
            else {}
        )

        for turn in range(self.max_tool_turns):
            messages = await self._maybe_compact(messages, stats)

            stats.state = TurnState.AWAIT_MODEL
            text, tool_calls = await self._stream_turn(messages, tools, on_chunk, stats)

            if not tool_calls:
                messages.append(Message(role="assistant", content=text))
                stats.state = TurnState.DONE
                return strip_thinking(text)

            messages.append(Message(role="assistant", content=text or None, tool_calls=tool_calls))
            stats.state = TurnState.EXECUTE_TOOLS
            log.debug("Executing tool calls", turn=turn, count=len(tool_calls))
            for call in tool_calls:
                result = await self._execute_tool_call(call, wrapped, conversation_id)
                stats.tool_calls += 1
                messages.append(Message(
                    role="tool",
                    content=result.text,
                    tool_call_id=call.id,
                    is_error=not result.ok,
                ))

        return await self._summarize_on_ceiling(messages, stats)

    async def _maybe_compact(self, messages: list[Message], stats: TurnStats) -> list[Message]:
        ctx = self.config.context
        if not needs_compaction(
            self.backend.model,
            messages,
            ratio=ctx.compaction_ratio,
            overrides=ctx.context_windows,
        ):
            return messages
        compacted = await compact_messages(
            self.backend,
            messages,
            keep_recent_turns=ctx.keep_recent_turns,
            max_message_chars=ctx.max_message_chars,
        )
        if compacted is not messages:
            stats.compactions += 1
        return compacted

    async def _stream_turn(
        self,
        messages: list[Message],
        tools: list[Any],
        on_chunk: ProgressCallback | None,
        stats: TurnStats,
    ) -> tuple[str, list[ToolCall]]:
        """Consume one streamed response into (text, tool calls)."""
        stats.backend_calls += 1
        text_parts: list[str] = []
        accumulator = ToolCallAccumulator()

        async for event in self.backend.stream(list(messages), tools or None):
            if event.text:
                text_parts.append(event.text)
                if on_chunk is not None:
                    self._emit_progress(on_chunk, "".join(text_parts))
            if event.tool_call is not None:
                accumulator.add(event.tool_call)

        return "".join(text_parts), accumulator.calls()

    async def _execute_tool_call(
        self,
        call: ToolCall,
        wrapped: dict[str, WrappedTool],
        conversation_id: Hashable,
    ) -> ToolResult:
        if self.backend.protocol is ToolProtocol.TYPED_SCHEMA:
            tool = wrapped.get(call.name)
            if tool is None:
                log.warning("Unknown tool requested", tool=call.name)
                return ToolResult.failure(f"Unknown tool: {call.name}", kind="unknown_tool")
            return await tool(call.arguments)
        return await self.tools.execute(
            call.name,
            call.arguments,
            loop_detector=self.loop_detector,
            conversation_key=conversation_id,
        )

    async def _summarize_on_ceiling(self, messages: list[Message], stats: TurnStats) -> str:
        """Ask for a progress summary once the tool turn ceiling is exhausted."""
        stats.state = TurnState.CEILING_REACHED
        log.warning("Tool turn ceiling reached", max_tool_turns=self.max_tool_turns)
        stats.backend_calls += 1
        try:
            response = await self.backend.complete(
                [*messages, Message(role="user", content=CEILING_SUMMARY_REQUEST)],
                tools=None,
            )
            summary = strip_thinking(response.content or "")
            if summary:
                return summary
        except Exception as e:
            log.warning("Ceiling summary failed", error=str(e))
        return CEILING_FALLBACK_REPLY

    def _emit_progress(self, callback: ProgressCallback, accumulated: str) -> None:
        """Forward sanitized progress text; never blocks, never raises."""
        sanitized = strip_thinking(accumulated)
        if not sanitized:
            return
        try:
            outcome = callback(sanitized)
        except Exception as e:
            log.debug("Progress callback failed", error=str(e))
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._callback_tasks.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Future[Any]) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.debug("Progress callback failed", error=str(task.exception()))
