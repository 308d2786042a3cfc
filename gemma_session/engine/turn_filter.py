"""Turn-boundary filter for chat-formatted generation streams.

The adapter streams every token of the call: first a verbatim echo of the
templated prompt, then sampled tokens. Only the model's reply should reach the
caller, so the filter runs a small state machine per token:

    AWAITING_PROMPT_ECHO   skip tokens until more than `prompt_tokens` were seen
    MATCHING_START_MARKER  look for <start_of_turn> immediately followed by "model"
    EMITTING               skip the rest of the generation prompt, then forward
                           decoded tokens verbatim; drop <end_of_turn>
    DONE                   stop (EOS, decode failure, or caller callback said stop)

The marker scan is anchored at the prompt-token offset. A prompt that itself
contains `<start_of_turn>model` after that offset would open the reply early.

`step()` is a pure transition over an explicit `TurnFilterState` value, so the
state machine can be exercised without an engine. `TurnFilter` wraps it with
token decoding and output plumbing and is what the adapter calls.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from .prompt import TurnMarkers
from .types import FinishReason, StreamCallback

logger = logging.getLogger(__name__)


class FilterPhase(enum.Enum):
    AWAITING_PROMPT_ECHO = "awaiting_prompt_echo"
    MATCHING_START_MARKER = "matching_start_marker"
    EMITTING = "emitting"
    DONE = "done"


class FilterAction(enum.Enum):
    SKIP = "skip"
    EMIT = "emit"
    STOP = "stop"


@dataclass(frozen=True)
class TurnFilterState:
    prompt_tokens: int
    phase: FilterPhase = FilterPhase.AWAITING_PROMPT_ECHO
    tokens_seen: int = 0
    marker_progress: int = 0
    emitted_tokens: int = 0
    # Generation-prompt tokens streamed after the model-turn marker (its newline).
    post_marker_echo: int = 0
    pending_echo: int = 0
    stop_reason: FinishReason | None = None


def step(
    state: TurnFilterState,
    token_id: int,
    *,
    markers: TurnMarkers | None,
    eos_token_id: int | None,
) -> tuple[TurnFilterState, FilterAction]:
    """Advance the filter by one token and decide what to do with it."""
    seen = state.tokens_seen + 1

    if state.phase is FilterPhase.DONE:
        return replace(state, tokens_seen=seen), FilterAction.STOP

    phase = state.phase
    if phase is FilterPhase.AWAITING_PROMPT_ECHO:
        if seen <= state.prompt_tokens:
            return replace(state, tokens_seen=seen), FilterAction.SKIP
        # Without chat markers (pretrained models) everything after the echo is reply.
        phase = FilterPhase.MATCHING_START_MARKER if markers is not None else FilterPhase.EMITTING

    if state.pending_echo > 0:
        return (
            replace(state, tokens_seen=seen, pending_echo=state.pending_echo - 1),
            FilterAction.SKIP,
        )

    if eos_token_id is not None and token_id == eos_token_id:
        return (
            replace(state, tokens_seen=seen, phase=FilterPhase.DONE, stop_reason="stop"),
            FilterAction.STOP,
        )

    if markers is None:
        return replace(state, tokens_seen=seen, phase=phase), FilterAction.EMIT

    if phase is FilterPhase.MATCHING_START_MARKER:
        if state.marker_progress == 1 and token_id == markers.model_id:
            return (
                replace(
                    state,
                    tokens_seen=seen,
                    phase=FilterPhase.EMITTING,
                    marker_progress=0,
                    pending_echo=state.post_marker_echo,
                ),
                FilterAction.SKIP,
            )
        progress = 1 if (state.marker_progress == 0 and token_id == markers.start_of_turn_id) else 0
        return (
            replace(state, tokens_seen=seen, phase=phase, marker_progress=progress),
            FilterAction.SKIP,
        )

    if token_id == markers.end_of_turn_id:
        return replace(state, tokens_seen=seen, phase=phase), FilterAction.SKIP

    return replace(state, tokens_seen=seen, phase=phase), FilterAction.EMIT


class TurnFilter:
    """Per-call token sink that extracts the model's reply.

    Args:
        decode: Decodes a single token ID in isolation.
        prompt_tokens: Number of leading streamed tokens that echo the prompt.
        markers: Chat marker IDs, or None for pass-through after the echo.
        eos_token_id: End-of-sequence token ID.
        sink: Receives each reply fragment (the session's result buffer).
        callback: Optional caller callback `(text, user_data) -> bool`.
        user_data: Opaque value handed back to `callback`.
        post_marker_echo: Prompt tokens that follow `<start_of_turn>model` in
            the echo (the generation prompt's trailing newline). Exactly this
            many are skipped once the marker matched; everything after is
            reply, whitespace included.
    """

    def __init__(
        self,
        *,
        decode: Callable[[int], str],
        prompt_tokens: int,
        markers: TurnMarkers | None,
        eos_token_id: int | None,
        sink: Callable[[str], None],
        callback: StreamCallback | None = None,
        user_data: Any = None,
        post_marker_echo: int = 0,
    ) -> None:
        self._decode = decode
        self._markers = markers
        self._eos_token_id = eos_token_id
        self._sink = sink
        self._callback = callback
        self._user_data = user_data
        self._state = TurnFilterState(
            prompt_tokens=max(int(prompt_tokens), 0),
            post_marker_echo=max(int(post_marker_echo), 0),
        )

    @property
    def state(self) -> TurnFilterState:
        return self._state

    @property
    def stop_reason(self) -> FinishReason | None:
        return self._state.stop_reason

    def __call__(self, token_id: int, prob: float = 0.0) -> bool:
        _ = prob
        return self.feed(token_id)

    def feed(self, token_id: int) -> bool:
        """Consume one streamed token. Returns False to ask the engine to stop."""
        self._state, action = step(
            self._state,
            int(token_id),
            markers=self._markers,
            eos_token_id=self._eos_token_id,
        )
        if action is FilterAction.SKIP:
            return True
        if action is FilterAction.STOP:
            return False

        try:
            text = self._decode(int(token_id))
        except (ValueError, UnicodeDecodeError, KeyError, IndexError, TypeError) as exc:
            text = None
            logger.debug("Token %d does not decode in isolation: %s", token_id, exc)
        if text is None:
            self._finish("decode_error")
            return False

        self._sink(text)
        self._state = replace(self._state, emitted_tokens=self._state.emitted_tokens + 1)

        if self._callback is not None and not self._callback(text, self._user_data):
            self._finish("callback")
            return False
        return True

    def _finish(self, reason: FinishReason) -> None:
        self._state = replace(self._state, phase=FilterPhase.DONE, stop_reason=reason)
