"""Adapter for the Gemma model families (Transformers backend)."""

from __future__ import annotations

import logging
import os
import re
import time
from typing import TYPE_CHECKING, Any, Sequence

from ..sampling import sample_top_k
from .base import BaseAdapter

if TYPE_CHECKING:
    import torch

    from gemma_session.runtime import ThreadPools

    from ..config import ModelConfiguration
    from ..kv_cache import KVCache
    from ..types import RuntimeConfig, TimingInfo

logger = logging.getLogger(__name__)

# Transformers `config.model_type` accepted for each model family.
_HF_MODEL_TYPES: dict[str, set[str]] = {
    "gemma": {"gemma"},
    "gemma2": {"gemma2"},
}

_BYTE_PIECE_RE = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")
_SPACE_MARKER = "▁"


def _as_dir(path: str) -> str:
    """from_pretrained() wants a directory; accept a file inside one."""
    return path if os.path.isdir(path) else os.path.dirname(path) or "."


class GemmaAdapter(BaseAdapter):
    """
    Adapter for Gemma / Gemma 2 checkpoints in Transformers format.

    Generation runs a manual prefill + decode loop against the session's
    KV cache so the cache survives across calls in multiturn mode.

    Thread Safety:
        This adapter is NOT thread-safe. Do not call generation methods concurrently
        from multiple threads on the same adapter instance. The owning session
        serializes access.
    """

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._config: ModelConfiguration | None = None
        self._device: str = "cpu"
        self._dtype = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def device(self) -> str:
        """Device the model is loaded on."""
        return self._device

    @property
    def model_config(self) -> dict[str, Any]:
        self._ensure_loaded()
        cfg = self._model.config
        num_heads = int(getattr(cfg, "num_attention_heads"))
        head_dim = getattr(cfg, "head_dim", None) or int(cfg.hidden_size) // num_heads
        return {
            "num_hidden_layers": int(cfg.num_hidden_layers),
            "num_key_value_heads": int(getattr(cfg, "num_key_value_heads", None) or num_heads),
            "head_dim": int(head_dim),
            "bytes_per_element": int(self._dtype.itemsize) if self._dtype is not None else 2,
        }

    @property
    def model_info(self) -> dict[str, Any]:
        """Return model metadata."""
        return {
            "model_type": self._config.model_type if self._config else None,
            "weights_path": self._config.weights_path if self._config else None,
            "device": self._device,
            "dtype": str(self._dtype),
            "loaded": self._model is not None,
        }

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, config: ModelConfiguration, pools: ThreadPools) -> None:
        """Load a Gemma model and tokenizer.

        Args:
            config: Validated configuration; `weight_type` selects the torch dtype.
            pools: Thread configuration; `pools.device` is used as device_map.
        """
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._config = config
        self._device = pools.device
        self._dtype = getattr(torch, config.dtype_name)

        self._tokenizer = AutoTokenizer.from_pretrained(_as_dir(config.tokenizer_path))
        self._model = AutoModelForCausalLM.from_pretrained(
            _as_dir(config.weights_path),
            torch_dtype=self._dtype,
            device_map=self._device,
        )
        self._model.eval()

        # Validate model type
        family = config.model_info.family
        hf_model_type = getattr(self._model.config, "model_type", None)
        expected = _HF_MODEL_TYPES.get(family, set())
        if hf_model_type not in expected:
            raise ValueError(
                f"model_type {config.model_type!r} expects a {sorted(expected)} checkpoint, "
                f"got {hf_model_type!r}"
            )
        logger.info(
            "Loaded %s (%s) on %s with %d threads",
            config.model_type,
            config.dtype_name,
            self._device,
            pools.num_threads,
        )

    def unload(self) -> None:
        """Unload the model and free accelerator memory."""
        import gc
        import torch

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    @property
    def stop_token_ids(self) -> frozenset[int]:
        """Tokenizer EOS plus the checkpoint's `generation_config.eos_token_id`.

        Instruction-tuned checkpoints list `<end_of_turn>` there next to EOS.
        """
        ids = set(super().stop_token_ids)
        generation_config = getattr(self._model, "generation_config", None)
        configured = getattr(generation_config, "eos_token_id", None)
        if isinstance(configured, int):
            configured = [configured]
        ids.update(int(t) for t in configured or ())
        return frozenset(ids)

    def decode_token(self, token_id: int) -> str:
        """Decode one token without context.

        SentencePiece decoders strip the leading space of the first token in a
        sequence, so the piece is mapped by hand. Byte-fallback pieces that are
        not complete UTF-8 characters on their own raise UnicodeDecodeError.
        """
        self._ensure_loaded()
        piece = self._tokenizer.convert_ids_to_tokens(int(token_id))
        if piece is None:
            raise ValueError(f"Unknown token id {token_id}")
        match = _BYTE_PIECE_RE.match(piece)
        if match:
            return bytes([int(match.group(1), 16)]).decode("utf-8")
        return piece.replace(_SPACE_MARKER, " ")

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(
        self,
        runtime_config: RuntimeConfig,
        prompt_ids: Sequence[int],
        start_pos: int,
        kv_cache: KVCache,
        timing: TimingInfo,
    ) -> str:
        self._ensure_loaded()
        import torch
        from transformers import DynamicCache

        prompt = [int(t) for t in prompt_ids]
        if not prompt:
            raise ValueError("Prompt must contain at least one token.")
        if kv_cache.pos != start_pos:
            raise ValueError(f"start_pos={start_pos} does not match KV cache pos={kv_cache.pos}")
        if start_pos + len(prompt) >= kv_cache.max_seq_len:
            raise ValueError(
                f"Prompt of {len(prompt)} tokens at pos {start_pos} does not fit "
                f"max_seq_len={kv_cache.max_seq_len}."
            )
        if kv_cache.past_key_values is None:
            kv_cache.past_key_values = DynamicCache()

        stream_token = runtime_config.stream_token
        stop_ids = self.stop_token_ids
        device = self._model.device

        # Prefill
        t0 = time.perf_counter()
        input_ids = torch.tensor([prompt], dtype=torch.long, device=device)
        cache_position = torch.arange(start_pos, start_pos + len(prompt), device=device)
        with torch.no_grad():
            outputs = self._model(
                input_ids,
                past_key_values=kv_cache.past_key_values,
                cache_position=cache_position,
                use_cache=True,
            )
        kv_cache.past_key_values = outputs.past_key_values
        kv_cache.advance(len(prompt))
        next_token_logits = outputs.logits[:, -1, :]
        timing.prefill_s = time.perf_counter() - t0
        timing.prompt_tokens = len(prompt)

        # Prompt echo
        for token_id in prompt:
            if not stream_token(token_id, 0.0):
                return "callback"

        # Decode loop
        t1 = time.perf_counter()
        finish_reason = "length"
        try:
            while timing.generated_tokens < runtime_config.max_generated_tokens:
                token_id, prob = sample_top_k(
                    next_token_logits,
                    temperature=runtime_config.temperature,
                    top_k=runtime_config.top_k,
                    generator=runtime_config.generator,
                )
                timing.generated_tokens += 1

                # Stop tokens are reported but their KV is not written.
                if not stream_token(token_id, prob):
                    finish_reason = "stop" if token_id in stop_ids else "callback"
                    break
                if token_id in stop_ids:
                    finish_reason = "stop"
                    break

                if kv_cache.remaining <= 0:
                    logger.warning("KV cache full at pos=%d; stopping generation", kv_cache.pos)
                    finish_reason = "cache_full"
                    break

                cache_position = torch.tensor([kv_cache.pos], device=device)
                with torch.no_grad():
                    outputs = self._model(
                        torch.tensor([[token_id]], dtype=torch.long, device=device),
                        past_key_values=kv_cache.past_key_values,
                        cache_position=cache_position,
                        use_cache=True,
                    )
                kv_cache.past_key_values = outputs.past_key_values
                kv_cache.advance(1)
                next_token_logits = outputs.logits[:, -1, :]
        finally:
            timing.decode_s = time.perf_counter() - t1

        return finish_reason

    # -------------------------------------------------------------------------
    # Internal: Validation
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")
