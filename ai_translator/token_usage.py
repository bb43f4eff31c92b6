"""Token usage bookkeeping for backend calls."""
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Immutable token counts reported by a backend."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    final: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_input_tokens=self.cache_creation_input_tokens + other.cache_creation_input_tokens,
            cache_read_input_tokens=self.cache_read_input_tokens + other.cache_read_input_tokens,
            final=False,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            'input_tokens': self.input_tokens,
            'output_tokens': self.output_tokens,
            'cache_creation_input_tokens': self.cache_creation_input_tokens,
            'cache_read_input_tokens': self.cache_read_input_tokens,
            'total_tokens': self.total_tokens,
        }


UsageCallback = Callable[[TokenUsage], None]


class TokenUsageAccumulator:
    """
    Running totals of the tokens consumed by one unit of work.

    Updates are plain sums, so partial reports from concurrent units can be
    combined in any order. The final total is reported through ``on_update``
    exactly once, when :meth:`finalize` is first called.

    Args:
        on_update: Optional callback receiving a snapshot after every change.
        parent: Optional accumulator that receives every delta as well.
    """

    def __init__(self, on_update: Optional[UsageCallback] = None,
                 parent: Optional["TokenUsageAccumulator"] = None):
        self._usage = TokenUsage()
        self._on_update = on_update
        self._parent = parent
        self._finalized = False

    @property
    def usage(self) -> TokenUsage:
        return replace(self._usage, final=self._finalized)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def add(self, input_tokens: int = 0, output_tokens: int = 0,
            cache_creation_input_tokens: int = 0, cache_read_input_tokens: int = 0) -> TokenUsage:
        """Add a delta and report the interim total."""
        delta = TokenUsage(
            input_tokens=input_tokens or 0,
            output_tokens=output_tokens or 0,
            cache_creation_input_tokens=cache_creation_input_tokens or 0,
            cache_read_input_tokens=cache_read_input_tokens or 0,
        )
        return self.merge(delta)

    def merge(self, delta: TokenUsage) -> TokenUsage:
        if self._finalized:
            raise RuntimeError("Cannot add token usage after the final total was reported")
        self._usage = self._usage + delta
        if self._parent is not None:
            self._parent.merge(delta)
        snapshot = self.usage
        if self._on_update:
            self._on_update(snapshot)
        return snapshot

    def finalize(self) -> TokenUsage:
        """Mark the totals authoritative. Only the first call reports them."""
        if self._finalized:
            return self.usage
        self._finalized = True
        snapshot = self.usage
        if self._on_update:
            self._on_update(snapshot)
        return snapshot
