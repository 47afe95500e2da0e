"""Context compaction: summarize the middle of a long history into one checkpoint.

Keeps the system prompt and original request at the front and the most
recent messages at the end; everything between is replaced by a single
summary produced by one extra backend call. Compaction is best-effort: on
any failure the original history is returned unchanged.
"""

from turnkeeper.context_limits import estimate_tokens
from turnkeeper.llm import ChatBackend, Message
from turnkeeper.logging import get_logger

log = get_logger(__name__)

DEFAULT_KEEP_RECENT_TURNS = 4
DEFAULT_MAX_MESSAGE_CHARS = 5000
TOOL_ARGUMENT_PREVIEW_CHARS = 200
CHECKPOINT_HEADER = "[CONTEXT CHECKPOINT: this summarizes our earlier conversation]"

COMPACTION_PROMPT = """You are a context compaction assistant. Summarize the conversation history below into a structured checkpoint. Be thorough: preserve all important details, findings, file paths, command outputs, error messages, and decisions, verbatim where feasible. This summary replaces the original messages, so nothing important should be lost.

Format your response exactly as:

## Goal
[What the user originally asked for]

## Progress
[Bullet list of what has been accomplished so far]

## Key Findings
[Important details, file contents, command outputs, error messages discovered]

## Current State
[Where things stand right now: what was the last action taken]

## Open Issues
[Any unresolved problems, errors, or next steps identified]"""


def serialize_for_compaction(
    messages: list[Message],
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
) -> str:
    """Render messages as a readable transcript for the summarizer."""
    blocks: list[str] = []
    for msg in messages:
        content = msg.content or ""
        if msg.images:
            content += "\n[non-text content]" if content else "[non-text content]"
        if msg.tool_calls:
            calls = "\n".join(
                f"  -> {tc.name}({(tc.arguments or '')[:TOOL_ARGUMENT_PREVIEW_CHARS]})"
                for tc in msg.tool_calls
            )
            content = f"{content}\n{calls}"
        if len(content) > max_message_chars:
            content = content[:max_message_chars] + "\n[...truncated...]"
        blocks.append(f"[{msg.role.upper()}]: {content}")
    return "\n\n---\n\n".join(blocks)


def checkpoint_message(summary: str) -> Message:
    return Message(role="user", content=f"{CHECKPOINT_HEADER}\n\n{summary}")


async def compact_messages(
    backend: ChatBackend,
    messages: list[Message],
    keep_recent_turns: int = DEFAULT_KEEP_RECENT_TURNS,
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
) -> list[Message]:
    """Compact ``messages`` into prefix + checkpoint + recent suffix.

    Args:
        backend: Backend used for the summarization call
        messages: Full history; index 0 is the system prompt, index 1 the request
        keep_recent_turns: Number of trailing messages kept verbatim
        max_message_chars: Per-message cap in the serialized transcript

    Returns:
        The rewritten list, or ``messages`` itself when there is nothing to
        compact or summarization fails.
    """
    keep_recent_turns = max(1, keep_recent_turns)
    if len(messages) < keep_recent_turns + 4:
        return messages

    prefix = messages[:2]
    middle = messages[2:-keep_recent_turns]
    recent = messages[-keep_recent_turns:]
    if len(middle) < 2:
        return messages

    estimated = estimate_tokens(messages)
    log.info(
        "Compacting context",
        model=backend.model,
        estimated_tokens=estimated,
        compacted_messages=len(middle),
    )

    try:
        transcript = serialize_for_compaction(middle, max_message_chars=max_message_chars)
        response = await backend.complete(
            messages=[
                Message(role="system", content=COMPACTION_PROMPT),
                Message(role="user", content=transcript),
            ],
            tools=None,
        )
        summary = (response.content or "").strip()
        if not summary:
            log.warning("Compaction returned an empty summary, keeping history", model=backend.model)
            return messages
    except Exception as e:
        log.warning("Compaction failed, keeping history", model=backend.model, error=str(e))
        return messages

    compacted = [*prefix, checkpoint_message(summary), *recent]
    log.info(
        "Compaction complete",
        before_tokens=estimated,
        after_tokens=estimate_tokens(compacted),
        compacted_messages=len(middle),
    )
    return compacted
