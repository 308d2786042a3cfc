"""Base adapter interface for model families."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from gemma_session.runtime import ThreadPools

    from ..config import ModelConfiguration
    from ..kv_cache import KVCache
    from ..types import RuntimeConfig, TimingInfo


class BaseAdapter(ABC):
    """
    Abstract base class for model-family adapters.

    Each supported model family implements this interface so the session
    can run inference without knowing model-specific details. The adapter is
    the inference-engine collaborator: it loads weights and tokenizer, sizes
    the KV cache, and runs one generation call that reports every token to a
    per-token callback.
    """

    @abstractmethod
    def load(self, config: ModelConfiguration, pools: ThreadPools) -> None:
        """
        Load model and tokenizer.

        Args:
            config: Validated model configuration.
            pools: Compute threads and target device for this session.
        """
        pass

    @property
    @abstractmethod
    def tokenizer(self) -> Any:
        """
        Tokenizer exposing `encode(text, add_special_tokens=False)`,
        `decode(ids)`, `bos_token_id` and `eos_token_id`.
        """
        pass

    @property
    @abstractmethod
    def model_config(self) -> dict[str, Any]:
        """
        Architecture parameters used to size the KV cache.

        Returns:
            Dict with `num_hidden_layers`, `num_key_value_heads`, `head_dim`
            and `bytes_per_element`.
        """
        pass

    @abstractmethod
    def generate(
        self,
        runtime_config: RuntimeConfig,
        prompt_ids: Sequence[int],
        start_pos: int,
        kv_cache: KVCache,
        timing: TimingInfo,
    ) -> str:
        """
        Run one generation call.

        The adapter first reports each prompt token to
        `runtime_config.stream_token` (the prompt echo), then every sampled
        token, synchronously and in order. Generation ends when the sink
        returns False, a token in `stop_token_ids` is sampled (it is reported
        but never written to the KV cache), the token budget is spent, or the
        KV cache is full.

        Args:
            runtime_config: Sampling settings, generator and per-token sink.
            prompt_ids: Token IDs to prefill, starting at `start_pos`.
            start_pos: Cache position of the first prompt token.
            kv_cache: Session KV cache; advanced in place.
            timing: Filled with prefill/decode timings.

        Returns:
            Engine finish reason: "stop", "length", "callback" or "cache_full".
        """
        pass

    @property
    def eos_token_id(self) -> int | None:
        """EOS token ID, or None if tokenizer not loaded."""
        tok = self.tokenizer
        if tok is None:
            return None
        return getattr(tok, "eos_token_id", None)

    @property
    def stop_token_ids(self) -> frozenset[int]:
        """Token IDs that end a generation call. Defaults to the tokenizer EOS."""
        eos = self.eos_token_id
        return frozenset() if eos is None else frozenset({int(eos)})

    def decode_token(self, token_id: int) -> str:
        """Decode a single token in isolation."""
        return self.tokenizer.decode([int(token_id)])

    @property
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the loaded model.

        Default implementation reports only whether a tokenizer is present.
        """
        return {"loaded": self.tokenizer is not None}

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
