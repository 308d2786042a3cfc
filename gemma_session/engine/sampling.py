"""Top-k token sampling."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import torch


def sample_top_k(
    logits: torch.Tensor,
    *,
    temperature: float,
    top_k: int,
    generator: torch.Generator | None = None,
) -> tuple[int, float]:
    """Sample one token from the last-position logits.

    `top_k == 1` or `temperature == 0` is greedy. Otherwise the top-k logits
    are temperature-scaled and sampled with `generator`, so a seeded generator
    reproduces the same choices.

    Returns:
        (token_id, probability of the chosen token under the sampling distribution)
    """
    import torch

    if temperature is None or temperature < 0:
        raise ValueError(f"Temperature must be >= 0, got {temperature}")
    if top_k < 1:
        raise ValueError(f"top_k must be >= 1, got {top_k}")

    # Numerical stability: compute softmax in fp32 to avoid overflow
    # that can occur with fp16 logits and low temperature.
    logits_f = logits.float().reshape(-1)

    if top_k == 1 or temperature == 0:
        token_id = int(torch.argmax(logits_f).item())
        prob = torch.softmax(logits_f, dim=-1)[token_id]
        return token_id, float(prob.item())

    k = min(int(top_k), logits_f.shape[0])
    top_logits, top_indices = torch.topk(logits_f, k)
    probs = torch.softmax(top_logits / float(temperature), dim=-1)
    choice = torch.multinomial(probs, 1, generator=generator)
    idx = int(choice.item())
    return int(top_indices[idx].item()), float(probs[idx].item())
