"""System prompt loading and caching."""

import inspect
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from turnkeeper.config import AgentConfig
from turnkeeper.llm import ChatBackend
from turnkeeper.logging import get_logger

log = get_logger(__name__)

PromptLoader = Callable[[], str | Awaitable[str]]


class SystemPromptCache:
    """Cache a loaded system prompt for a fixed time, with explicit invalidation."""

    def __init__(
        self,
        loader: PromptLoader,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cached: str | None = None
        self._loaded_at = 0.0

    async def get(self) -> str:
        now = self._clock()
        if self._cached is None or now - self._loaded_at > self.ttl_seconds:
            loaded = self._loader()
            if inspect.isawaitable(loaded):
                loaded = await loaded
            self._cached = str(loaded)
            self._loaded_at = now
            log.info("System prompt loaded", chars=len(self._cached))
        return self._cached

    def invalidate(self) -> None:
        self._cached = None


def default_prompt_loader(agent_config: AgentConfig, backend: ChatBackend) -> PromptLoader:
    """Build a loader that reads the configured prompt and appends runtime model info."""

    def load() -> str:
        base = agent_config.system_prompt
        if agent_config.system_prompt_file:
            path = Path(agent_config.system_prompt_file).expanduser()
            try:
                base = path.read_text(encoding="utf-8")
            except OSError as e:
                log.warning("System prompt file unreadable, using inline prompt", path=str(path), error=str(e))
        return (
            f"{base.rstrip()}\n\n---\n\n# System Info\n\n"
            f"You are currently running as model `{backend.model}` via the "
            f"{backend.family.display_name} API. If asked what model you are, report this accurately."
        )

    return load
