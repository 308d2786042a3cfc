"""Inference session: one loaded model, its KV cache and reusable buffers.

A `Session` is built all-or-nothing (validate, thread pools, model, KV cache)
and then serves `generate` / `count_tokens` calls one at a time.

Typical use:

    config = ModelConfiguration("tok/", "2b-it", "weights/", "bf16")
    with Session(config) as session:
        out = bytearray(4096)
        n = session.generate("Why is the sky blue?", out, len(out))
        print(out[:n].decode("utf-8"))
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import threading
from typing import Any, Iterator

import torch

from .. import runtime
from .adapters.base import BaseAdapter
from .config import DEFAULT_MAX_SEQ_LEN, GenerationSettings, ModelConfiguration, RuntimeOptions
from .errors import (
    ConfigurationError,
    GenerationError,
    InvalidArgumentError,
    SessionClosedError,
    SessionCreationError,
    SessionError,
    TokenizationError,
)
from .kv_cache import KVCache
from .output_buffer import ResultBuffer, check_output
from .prompt import TurnMarkers, wrap_and_tokenize
from .registry import get_adapter
from .turn_filter import TurnFilter
from .types import GenerationRequest, GenerationResult, RuntimeConfig, StreamCallback, TimingInfo

logger = logging.getLogger(__name__)

# Fixed seed for deterministic sessions.
DETERMINISTIC_SEED = 0x87654321


class Session:
    """
    A loaded model plus everything one conversation needs.

    Args:
        config: Model location and weight format. Validated before anything
            is loaded.
        runtime_options: Compute threads, verbosity and device.
        settings: Default sampling settings for every call.
        max_seq_len: KV cache capacity in tokens.

    Raises:
        ConfigurationError: Invalid configuration, settings or options.
        SessionCreationError: Thread pools, model loading or KV cache
            allocation failed. Anything already loaded is released first.

    Thread-safety:
        One call at a time. Calls are serialized with a lock (single-flight);
        calling back into the session from a stream callback raises
        InvalidArgumentError instead of deadlocking.
    """

    def __init__(
        self,
        config: ModelConfiguration,
        *,
        runtime_options: RuntimeOptions | None = None,
        settings: GenerationSettings | None = None,
        max_seq_len: int = DEFAULT_MAX_SEQ_LEN,
    ) -> None:
        runtime.initialize()

        options = runtime_options or RuntimeOptions()
        options.validate()
        settings = settings or GenerationSettings()
        settings.validate()
        if isinstance(max_seq_len, bool) or not isinstance(max_seq_len, int) or max_seq_len <= 0:
            raise ConfigurationError("max_seq_len", f"must be a positive integer, got {max_seq_len!r}")
        self._config = config.validate()
        self._info = self._config.model_info
        self._options = options
        self._settings = settings

        adapter: BaseAdapter | None = None
        try:
            self._pools = runtime.create_pools(options)
            adapter = get_adapter(self._info.family)
            adapter.load(self._config, self._pools)
            self._kv_cache = KVCache.create(adapter.model_config, max_seq_len)
            self._markers = (
                TurnMarkers.from_tokenizer(adapter.tokenizer) if self._info.instruction_tuned else None
            )
            self._generator = torch.Generator(device=self._pools.device)
        except Exception as exc:
            if adapter is not None:
                _unload_quietly(adapter)
            raise SessionCreationError(
                f"Failed to create session for {self._config.model_type!r}: {exc}"
            ) from exc

        if self._info.instruction_tuned and self._markers is None:
            logger.warning(
                "Tokenizer has no single-token chat markers; replies are not turn-filtered."
            )

        self._adapter = adapter
        self._seed(settings.seed, settings.deterministic)

        self._prompt_buffer = ""
        self._result = ResultBuffer()
        self._token_buffer: list[int] = []

        self._lock = threading.Lock()
        self._owner: int | None = None
        self._closed = False

        logger.info(
            "Session ready: %s (%s), max_seq_len=%d, est. KV cache %.1f MiB",
            self._config.model_type,
            self._config.weight_type,
            self._kv_cache.max_seq_len,
            self._kv_cache.estimated_bytes / (1024 * 1024),
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ModelConfiguration:
        return self._config

    @property
    def settings(self) -> GenerationSettings:
        return self._settings

    @property
    def pools(self) -> runtime.ThreadPools:
        return self._pools

    @property
    def kv_cache(self) -> KVCache:
        return self._kv_cache

    @property
    def adapter(self) -> BaseAdapter:
        """Access to the underlying adapter (for advanced use cases)."""
        return self._adapter

    @property
    def prompt_buffer(self) -> str:
        """Prompt text of the most recent generate call."""
        return self._prompt_buffer

    @property
    def token_buffer(self) -> list[int]:
        """Token IDs of the most recent generate call (a copy)."""
        return list(self._token_buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "model_type": self._config.model_type,
            "family": self._info.family,
            "training": self._info.training,
            "weight_type": self._config.weight_type,
            "tokenizer_path": self._config.tokenizer_path,
            "weights_path": self._config.weights_path,
            "kv_cache": self._kv_cache.info(),
            "pools": self._pools.as_dict(),
            "settings": dataclasses.asdict(self._settings),
            "adapter": self._adapter.model_info,
            "closed": self._closed,
        }

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(
        self,
        prompt: str | bytes,
        output: Any,
        capacity: int,
        stream_callback: StreamCallback | None = None,
        user_data: Any = None,
        **overrides: Any,
    ) -> int:
        """
        Generate a reply and copy it into a caller-owned buffer.

        Args:
            prompt: User prompt (str, or UTF-8 bytes).
            output: Writable buffer (`bytearray`, `memoryview`, ctypes char array).
            capacity: Bytes the caller accepts, NUL terminator included.
            stream_callback: Optional `(text, user_data) -> bool`, called with
                each reply fragment; returning False stops generation.
            user_data: Handed back to `stream_callback` unchanged.
            **overrides: Per-call `GenerationSettings` fields
                (e.g. `max_generated_tokens=64`).

        Returns:
            Number of bytes written, excluding the terminator.

        Raises:
            InvalidArgumentError: Bad prompt, buffer or capacity; re-entrant call.
            SessionClosedError: The session was closed.
            TokenizationError: The prompt could not be tokenized.
            GenerationError: The engine failed.
            OutputOverflowError: The reply does not fit `capacity`.
        """
        check_output(output, capacity)
        request = GenerationRequest(
            prompt=_coerce_text(prompt, "prompt"),
            output=output,
            capacity=capacity,
            stream_callback=stream_callback,
            user_data=user_data,
            overrides=overrides,
        )
        return self._run(request).bytes_written

    def generate_text(
        self,
        prompt: str | bytes,
        *,
        stream_callback: StreamCallback | None = None,
        user_data: Any = None,
        **overrides: Any,
    ) -> GenerationResult:
        """Generate a reply and return it with token counts and timings."""
        request = GenerationRequest(
            prompt=_coerce_text(prompt, "prompt"),
            stream_callback=stream_callback,
            user_data=user_data,
            overrides=overrides,
        )
        return self._run(request)

    def count_tokens(self, text: str | bytes) -> int:
        """Number of tokens `text` occupies once wrapped as a first-turn prompt.

        Uses a scratch list, so the session's prompt and token buffers are
        left untouched.
        """
        text = _coerce_text(text, "text")
        with self._single_flight():
            self._ensure_open()
            try:
                wrapped = wrap_and_tokenize(self._adapter.tokenizer, self._info, 0, text)
            except Exception as exc:
                raise TokenizationError(f"Failed to tokenize text: {exc}") from exc
            return len(wrapped.token_ids)

    def reset(self) -> None:
        """Forget the conversation held in the KV cache."""
        with self._single_flight():
            self._ensure_open()
            self._kv_cache.reset()

    def close(self) -> None:
        """Unload the model. Safe to call more than once."""
        with self._single_flight():
            if self._closed:
                return
            self._closed = True
            self._kv_cache.reset()
            self._result.clear()
            self._token_buffer.clear()
            self._adapter.unload()
            logger.info("Session closed: %s", self._config.model_type)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"pos={self._kv_cache.pos}/{self._kv_cache.max_seq_len}"
        return f"Session({self._config.model_type!r}, {state})"

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run(self, request: GenerationRequest) -> GenerationResult:
        with self._single_flight():
            self._ensure_open()
            settings = self._settings.merged(request.overrides or None)
            if {"seed", "deterministic"} & request.overrides.keys():
                self._seed(settings.seed, settings.deterministic)

            self._result.clear()
            self._prompt_buffer = request.prompt

            if not settings.multiturn:
                self._kv_cache.reset()
            start_pos = self._kv_cache.pos

            try:
                wrapped = wrap_and_tokenize(
                    self._adapter.tokenizer, self._info, start_pos, self._prompt_buffer
                )
            except Exception as exc:
                raise TokenizationError(f"Failed to tokenize prompt: {exc}") from exc
            self._token_buffer.clear()
            self._token_buffer.extend(wrapped.token_ids)
            if not self._token_buffer:
                raise TokenizationError("Prompt produced no tokens.")
            if start_pos + len(self._token_buffer) >= self._kv_cache.max_seq_len:
                raise InvalidArgumentError(
                    f"Prompt of {len(self._token_buffer)} tokens at position {start_pos} "
                    f"does not fit max_seq_len={self._kv_cache.max_seq_len}."
                )

            # The generation-prompt markers are left to the filter's marker scan;
            # whatever the template puts after them is skipped by count.
            if self._markers is not None:
                echo_len = wrapped.history_len
                post_marker_echo = max(wrapped.generation_prompt_len - 2, 0)
            else:
                echo_len = len(self._token_buffer)
                post_marker_echo = 0
            turn_filter = TurnFilter(
                decode=self._adapter.decode_token,
                prompt_tokens=echo_len,
                markers=self._markers,
                eos_token_id=self._adapter.eos_token_id,
                sink=self._result.append,
                callback=request.stream_callback,
                user_data=request.user_data,
                post_marker_echo=post_marker_echo,
            )
            runtime_config = RuntimeConfig(
                generator=self._generator,
                stream_token=turn_filter,
                max_generated_tokens=settings.max_generated_tokens,
                temperature=settings.temperature,
                top_k=settings.top_k,
                verbosity=self._options.verbosity,
                use_spinning=self._pools.spin,
            )
            timing = TimingInfo()

            try:
                engine_reason = self._adapter.generate(
                    runtime_config, list(self._token_buffer), start_pos, self._kv_cache, timing
                )
            except SessionError:
                raise
            except Exception as exc:
                raise GenerationError(f"Generation failed: {exc}") from exc

            finish_reason = turn_filter.stop_reason or engine_reason
            if self._options.verbosity >= 1:
                tok_per_s = timing.tok_per_s
                logger.info(
                    "Generated %d tokens (prompt %d) in %.3fs: %.3fs prefill + %.3fs decode%s, finish=%s",
                    timing.generated_tokens,
                    timing.prompt_tokens,
                    timing.total_s,
                    timing.prefill_s,
                    timing.decode_s,
                    f" ({tok_per_s:.1f} tok/s)" if tok_per_s is not None else "",
                    finish_reason,
                )

            bytes_written = None
            if request.output is not None:
                bytes_written = self._result.copy_to(request.output, request.capacity)

            return GenerationResult(
                text=self._result.text,
                prompt_tokens=len(self._token_buffer),
                generated_tokens=timing.generated_tokens,
                finish_reason=finish_reason,
                timing=timing,
                bytes_written=bytes_written,
            )

    @contextlib.contextmanager
    def _single_flight(self) -> Iterator[None]:
        me = threading.get_ident()
        if self._owner == me:
            raise InvalidArgumentError(
                "Session is busy on this thread; it cannot be used from inside a stream callback."
            )
        with self._lock:
            self._owner = me
            try:
                yield
            finally:
                self._owner = None

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Session is closed.")

    def _seed(self, seed: int | None, deterministic: bool) -> None:
        if seed is not None:
            self._generator.manual_seed(int(seed))
        elif deterministic:
            self._generator.manual_seed(DETERMINISTIC_SEED)
        else:
            self._generator.seed()


def _coerce_text(value: Any, name: str) -> str:
    if value is None:
        raise InvalidArgumentError(f"{name} must not be None.")
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidArgumentError(f"{name} is not valid UTF-8: {exc}") from exc
    if not isinstance(value, str):
        raise InvalidArgumentError(f"{name} must be str or bytes, got {type(value).__name__}.")
    return value


def _unload_quietly(adapter: BaseAdapter) -> None:
    try:
        adapter.unload()
    except Exception:
        logger.warning("Adapter unload failed during session cleanup", exc_info=True)
