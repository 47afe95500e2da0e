"""Context window sizes, compaction thresholds and token estimation.

Compaction triggers at 70% of the context window, leaving room for the
compaction call itself plus continued tool use.
"""

import math
from dataclasses import dataclass

from turnkeeper.llm import Message

DEFAULT_COMPACTION_RATIO = 0.7
DEFAULT_CONTEXT_WINDOW = 128_000

# Conservative: over-counting triggers compaction early, never late.
CHARS_PER_TOKEN = 3.5
MESSAGE_OVERHEAD_TOKENS = 4
IMAGE_TOKEN_ESTIMATE = 1_600


@dataclass(frozen=True)
class ModelLimits:
    """Context window and compaction trigger for one model."""

    context_window: int
    compaction_threshold: int


def limits(context_window: int, ratio: float = DEFAULT_COMPACTION_RATIO) -> ModelLimits:
    ratio = min(max(ratio, 0.05), 1.0)
    return ModelLimits(
        context_window=context_window,
        compaction_threshold=math.floor(round(context_window * ratio, 6)),
    )


MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-opus-4-6": 200_000,
    "claude-sonnet-4-6": 200_000,
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-haiku-4-5-20251001": 200_000,
    # OpenAI: GPT-5 series
    "gpt-5.2": 128_000,
    "gpt-5.2-chat-latest": 128_000,
    "gpt-5.2-pro": 128_000,
    "GPT-5.3-Codex": 192_000,
    "GPT-5.2-Codex": 192_000,
    "GPT-5.1-Codex-Mini": 192_000,
    # OpenAI: o-series
    "o3": 200_000,
    "o3-mini": 200_000,
    "o3-pro": 200_000,
    "o3-deep-research": 200_000,
    "o4-mini": 200_000,
    "o4-mini-deep-research": 200_000,
    # OpenAI: GPT-4 series
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4.1": 1_000_000,
    "gpt-4.1-mini": 1_000_000,
    "gpt-4.1-nano": 1_000_000,
    # MiniMax
    "MiniMax-M2.5": 1_000_000,
    "MiniMax-M2.5-highspeed": 1_000_000,
}


def get_model_limits(
    model: str,
    *,
    ratio: float = DEFAULT_COMPACTION_RATIO,
    overrides: dict[str, int] | None = None,
) -> ModelLimits:
    """Limits for a model identifier, falling back to the default entry."""
    window = (overrides or {}).get(model) or MODEL_CONTEXT_WINDOWS.get(model) or DEFAULT_CONTEXT_WINDOW
    return limits(window, ratio)


def estimate_tokens(messages: list[Message]) -> int:
    """Rough token estimate over message text, tool-call arguments and images."""
    chars = 0
    images = 0
    for msg in messages:
        chars += len(msg.content or "")
        for tc in msg.tool_calls:
            chars += len(tc.name) + len(tc.arguments or "")
        images += len(msg.images)
    return (
        math.ceil(chars / CHARS_PER_TOKEN)
        + MESSAGE_OVERHEAD_TOKENS * len(messages)
        + IMAGE_TOKEN_ESTIMATE * images
    )


def needs_compaction(
    model: str,
    messages: list[Message],
    *,
    ratio: float = DEFAULT_COMPACTION_RATIO,
    overrides: dict[str, int] | None = None,
) -> bool:
    """Whether the estimate for ``messages`` exceeds the model's compaction threshold."""
    threshold = get_model_limits(model, ratio=ratio, overrides=overrides).compaction_threshold
    return estimate_tokens(messages) > threshold
