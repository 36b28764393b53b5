"""Context budget: token estimation against the model's context ceiling."""

import math

CHARS_PER_TOKEN = 4
THRESHOLD_RATIO = 0.8


def estimate_tokens(messages: list[dict]) -> int:
    """Conservative estimate: ceil(chars / 4) over content and reasoning text."""
    chars = 0
    for m in messages:
        chars += len(m.get("content") or "")
        chars += len(m.get("reasoning_content") or "")
    return math.ceil(chars / CHARS_PER_TOKEN)


def format_tokens(n: int) -> str:
    """Compact token count: 950, 12.4K, 128K, 1.2M."""
    if n < 1000:
        return str(n)
    if n < 1_000_000:
        value = n / 1000
        suffix = "K"
    else:
        value = n / 1_000_000
        suffix = "M"
    text = f"{value:.1f}"
    if text.endswith(".0"):
        text = text[:-2]
    return text + suffix


class ContextBudget:
    """Tracks the last estimate and the one-shot aggressive-compaction flag.

    The ceiling comes from the model client unless overridden.
    """

    def __init__(self, client=None, *, limit: int | None = None):
        self.client = client
        self.limit = limit
        self.last_estimate = 0
        self._triggered = False

    def ceiling(self) -> int:
        if self.limit:
            return self.limit
        if self.client is not None:
            return self.client.context_limit()
        raise ValueError("context budget needs a model client or an explicit limit")

    def threshold(self) -> int:
        return int(self.ceiling() * THRESHOLD_RATIO)

    def estimate(self, messages: list[dict]) -> int:
        self.last_estimate = estimate_tokens(messages)
        return self.last_estimate

    def is_over_threshold(self, tokens: int) -> bool:
        return tokens > self.ceiling() * THRESHOLD_RATIO

    def should_compact(self, tokens: int) -> bool:
        """True once per crossing of the threshold.

        Dropping back under the threshold re-arms the flag, so a conversation
        that grows past it again gets another aggressive pass.
        """
        if not self.is_over_threshold(tokens):
            self._triggered = False
            return False
        if self._triggered:
            return False
        self._triggered = True
        return True

    def reset(self) -> None:
        self.last_estimate = 0
        self._triggered = False

    def usage_label(self) -> str:
        return f"{format_tokens(self.last_estimate)}/{format_tokens(self.ceiling())}"
