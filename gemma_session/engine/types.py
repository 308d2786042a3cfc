"""Engine request and response types.

These types are used internally by the session and adapters.
They are independent of the foreign-function boundary in `gemma_session.capi`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal


# Per-token sink handed to the adapter: (token_id, probability) -> keep going?
StreamTokenFn = Callable[[int, float], bool]

# Caller-supplied reply callback: (text, user_data) -> keep going?
StreamCallback = Callable[[str, Any], bool]

FinishReason = Literal["stop", "length", "callback", "decode_error", "cache_full"]


@dataclass
class RuntimeConfig:
    """Per-call generation configuration passed to the adapter."""

    generator: Any
    stream_token: StreamTokenFn
    max_generated_tokens: int = 2048
    temperature: float = 0.7
    top_k: int = 1
    verbosity: int = 0
    use_spinning: bool = False


@dataclass
class TimingInfo:
    """Filled in by the adapter during a generation call."""

    prefill_s: float = 0.0
    decode_s: float = 0.0
    prompt_tokens: int = 0
    generated_tokens: int = 0

    @property
    def total_s(self) -> float:
        return self.prefill_s + self.decode_s

    @property
    def tok_per_s(self) -> float | None:
        if self.decode_s <= 0:
            return None
        return self.generated_tokens / self.decode_s


@dataclass
class GenerationRequest:
    """One `generate` invocation."""

    prompt: str
    # Caller buffer and its declared capacity; None for text-only calls.
    output: Any = None
    capacity: int | None = None
    stream_callback: StreamCallback | None = None
    user_data: Any = None
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResult:
    """Filtered reply plus diagnostics for one generation call."""

    text: str
    prompt_tokens: int
    generated_tokens: int
    finish_reason: FinishReason
    timing: TimingInfo
    # Bytes copied into the request buffer, terminator excluded.
    bytes_written: int | None = None
