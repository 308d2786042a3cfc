"""Chat-template wrapping and tokenization of user prompts.

Instruction-tuned models expect each user message wrapped in turn markers:

    <start_of_turn>user
    {prompt}<end_of_turn>
    <start_of_turn>model

The trailing `<start_of_turn>model` line is the generation prompt. We keep
its token offset (`history_len`) so the turn filter can anchor its marker
scan right after the user's turn.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .registry import ModelInfo


START_OF_TURN = "<start_of_turn>"
END_OF_TURN = "<end_of_turn>"
MODEL_ROLE = "model"


@dataclass(frozen=True)
class TurnMarkers:
    """Token IDs of the chat control markers."""

    start_of_turn_id: int
    model_id: int
    end_of_turn_id: int

    @classmethod
    def from_tokenizer(cls, tokenizer: Any) -> "TurnMarkers | None":
        """Resolve marker IDs; None if any marker is not a single token."""
        ids = []
        for text in (START_OF_TURN, MODEL_ROLE, END_OF_TURN):
            encoded = list(tokenizer.encode(text, add_special_tokens=False))
            if len(encoded) != 1:
                return None
            ids.append(int(encoded[0]))
        return cls(start_of_turn_id=ids[0], model_id=ids[1], end_of_turn_id=ids[2])


@dataclass(frozen=True)
class WrappedPrompt:
    token_ids: list[int]
    history_len: int

    @property
    def generation_prompt_len(self) -> int:
        return len(self.token_ids) - self.history_len


def wrap_prompt(prompt: str, info: ModelInfo, pos: int) -> tuple[str, str]:
    """Return (history, generation_prompt) text for a prompt at cache position `pos`.

    Pretrained models get the raw prompt and no generation prompt. For
    follow-up turns (pos > 0) the previous model turn is closed first, because
    its end-of-turn marker was never written to the KV cache.
    """
    if not info.instruction_tuned:
        return prompt, ""
    history = f"{START_OF_TURN}user\n{prompt}{END_OF_TURN}\n"
    if pos > 0:
        history = f"{END_OF_TURN}\n{history}"
    return history, f"{START_OF_TURN}{MODEL_ROLE}\n"


def wrap_and_tokenize(tokenizer: Any, info: ModelInfo, pos: int, prompt: str) -> WrappedPrompt:
    """Wrap `prompt` for the model and tokenize it.

    A BOS token is prepended only at the start of the sequence (pos == 0).
    """
    history, generation_prompt = wrap_prompt(prompt, info, pos)

    token_ids: list[int] = []
    bos = getattr(tokenizer, "bos_token_id", None)
    if pos == 0 and bos is not None:
        token_ids.append(int(bos))
    if history:
        token_ids.extend(int(t) for t in tokenizer.encode(history, add_special_tokens=False))
    history_len = len(token_ids)
    if generation_prompt:
        token_ids.extend(int(t) for t in tokenizer.encode(generation_prompt, add_special_tokens=False))
    return WrappedPrompt(token_ids=token_ids, history_len=history_len)
