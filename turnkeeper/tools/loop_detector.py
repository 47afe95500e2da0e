"""Stuck-cycle detection for repeated identical tool calls."""

from collections import deque
from collections.abc import Hashable

from turnkeeper.logging import get_logger

log = get_logger(__name__)

DEFAULT_LOOP_THRESHOLD = 3
DEFAULT_FINGERPRINT_CHARS = 500


class LoopDetector:
    """Track recent (tool, arguments) fingerprints and flag stuck cycles.

    A stuck cycle is ``threshold`` consecutive dispatches with the same tool
    name and the same leading ``fingerprint_chars`` of raw argument text. The
    match is exact: reordered keys or changed whitespace defeat it.

    Fingerprints are buffered per key (normally a conversation id) so that
    concurrent conversations do not disturb each other's signal. Callers that
    pass no key share a single default buffer.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_LOOP_THRESHOLD,
        fingerprint_chars: int = DEFAULT_FINGERPRINT_CHARS,
    ):
        if threshold < 2:
            raise ValueError("Loop threshold must be at least 2")
        self.threshold = threshold
        self.fingerprint_chars = max(0, fingerprint_chars)
        self._buffers: dict[Hashable, deque[str]] = {}

    def fingerprint(self, name: str, raw_arguments: str) -> str:
        return f"{name}:{(raw_arguments or '')[:self.fingerprint_chars]}"

    def check(self, name: str, raw_arguments: str, key: Hashable | None = None) -> str | None:
        """Record a dispatch attempt.

        Returns:
            The corrective message when a stuck cycle is detected (the buffer
            is cleared and the call must not execute), otherwise None.
        """
        fingerprint = self.fingerprint(name, raw_arguments)
        buffer = self._buffers.setdefault(key, deque(maxlen=self.threshold))
        buffer.append(fingerprint)

        if len(buffer) >= self.threshold and all(item == fingerprint for item in buffer):
            log.warning("Loop detected", tool=name, repeats=self.threshold, key=key)
            buffer.clear()
            return (
                f"Loop detected: you've called {name} with the same arguments "
                f"{self.threshold} times in a row. Try a different approach."
            )
        return None

    def reset(self, key: Hashable | None = None, *, all_keys: bool = False) -> None:
        """Forget recorded fingerprints for one key, or for every key."""
        if all_keys:
            self._buffers.clear()
            return
        self._buffers.pop(key, None)

    def recent(self, key: Hashable | None = None) -> list[str]:
        """Return the buffered fingerprints for a key, oldest first."""
        return list(self._buffers.get(key, ()))
