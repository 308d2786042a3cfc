"""Flat, C-style entry points over `Session`.

These functions never raise. Failures are logged and reported as `None`
(`gemma_create`) or `FAILURE` (-1); use `Session` directly to get the
structured exception instead. `output` may be a `bytearray`, a writable
`memoryview`, or a ctypes char array such as `ctypes.create_string_buffer(n)`.
"""

from __future__ import annotations

import logging
from typing import Any

from gemma_session.engine.config import (
    DEFAULT_MAX_SEQ_LEN,
    GenerationSettings,
    ModelConfiguration,
    RuntimeOptions,
)
from gemma_session.engine.errors import FAILURE, GemmaSessionError
from gemma_session.engine.session import Session
from gemma_session.engine.types import StreamCallback

logger = logging.getLogger(__name__)


def gemma_create(
    tokenizer_path: str,
    model_type: str,
    weights_path: str,
    weight_type: str,
    *,
    runtime_options: RuntimeOptions | None = None,
    settings: GenerationSettings | None = None,
    max_seq_len: int = DEFAULT_MAX_SEQ_LEN,
) -> Session | None:
    """Create a session, or return None if validation or loading fails."""
    try:
        config = ModelConfiguration(
            tokenizer_path=tokenizer_path,
            model_type=model_type,
            weights_path=weights_path,
            weight_type=weight_type,
        )
        return Session(
            config,
            runtime_options=runtime_options,
            settings=settings,
            max_seq_len=max_seq_len,
        )
    except GemmaSessionError as exc:
        logger.warning("gemma_create failed: %s", exc)
    except Exception:
        logger.exception("gemma_create failed unexpectedly")
    return None


def gemma_destroy(session: Session | None) -> None:
    """Release a session. None and already-destroyed sessions are ignored."""
    if session is None:
        return
    try:
        session.close()
    except Exception:
        logger.exception("gemma_destroy failed")


def gemma_generate(session: Session | None, prompt: Any, output: Any, max_length: int) -> int:
    """Generate into `output`; returns bytes written (excluding NUL) or -1."""
    return gemma_generate_ex(session, prompt, output, max_length, None, None)


def gemma_generate_ex(
    session: Session | None,
    prompt: Any,
    output: Any,
    max_length: int,
    callback: StreamCallback | None,
    user_data: Any,
) -> int:
    """Like `gemma_generate`, also streaming reply fragments to `callback(text, user_data)`."""
    if session is None:
        logger.debug("gemma_generate called without a session")
        return FAILURE
    try:
        return session.generate(
            prompt, output, max_length, stream_callback=callback, user_data=user_data
        )
    except GemmaSessionError as exc:
        logger.debug("gemma_generate failed: %s", exc)
    except Exception:
        logger.exception("gemma_generate failed unexpectedly")
    return FAILURE


def gemma_count_tokens(session: Session | None, text: Any) -> int:
    """Token count of `text` as a wrapped first-turn prompt, or -1."""
    if session is None:
        logger.debug("gemma_count_tokens called without a session")
        return FAILURE
    try:
        return session.count_tokens(text)
    except GemmaSessionError as exc:
        logger.debug("gemma_count_tokens failed: %s", exc)
    except Exception:
        logger.exception("gemma_count_tokens failed unexpectedly")
    return FAILURE
