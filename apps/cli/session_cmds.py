from __future__ import annotations

import contextlib
import logging
import sys
from typing import Any, Iterator

from apps.cli.output import format_kv, format_table, print_json
from gemma_session.engine.config import (
    GenerationSettings,
    ModelConfiguration,
    RuntimeOptions,
    validate_model_config,
)
from gemma_session.engine.errors import ConfigurationError, GemmaSessionError, OutputOverflowError
from gemma_session.engine.registry import list_model_types, list_weight_types, lookup_model_type
from gemma_session.engine.session import Session

logger = logging.getLogger(__name__)


class SessionCommandError(RuntimeError):
    pass


def models_cmd(*, json_output: bool = False) -> int:
    infos = [lookup_model_type(name) for name in list_model_types()]
    if json_output:
        print_json(
            {
                "model_types": [
                    {"model_type": i.model_type, "family": i.family, "training": i.training}
                    for i in infos
                    if i is not None
                ],
                "weight_types": list_weight_types(),
            }
        )
        return 0

    rows = [(i.model_type, i.family, i.training) for i in infos if i is not None]
    print(format_table(["MODEL_TYPE", "FAMILY", "TRAINING"], rows))
    print()
    print(f"weight types: {', '.join(list_weight_types())}")
    return 0


def validate_cmd(
    *,
    tokenizer: str,
    model_type: str,
    weights: str,
    weight_type: str,
    json_output: bool = False,
) -> int:
    try:
        cfg = validate_model_config(tokenizer, model_type, weights, weight_type)
    except ConfigurationError as exc:
        if json_output:
            print_json({"ok": False, "field": exc.field, "error": exc.reason})
            return 1
        raise SessionCommandError(str(exc)) from exc

    info = cfg.model_info
    summary = {
        "tokenizer_path": cfg.tokenizer_path,
        "weights_path": cfg.weights_path,
        "model_type": cfg.model_type,
        "family": info.family,
        "training": info.training,
        "weight_type": cfg.weight_type,
        "dtype": cfg.dtype_name,
    }
    if json_output:
        print_json({"ok": True, **summary})
    else:
        print(format_kv(summary))
    return 0


def count_tokens_cmd(
    *,
    config: ModelConfiguration,
    options: RuntimeOptions,
    text: str,
    max_seq_len: int,
) -> int:
    with _open_session(config, options, GenerationSettings(), max_seq_len) as session:
        try:
            n = session.count_tokens(text)
        except GemmaSessionError as exc:
            raise SessionCommandError(f"count-tokens failed: {exc}") from exc
    print(n)
    return 0


def generate_cmd(
    *,
    config: ModelConfiguration,
    options: RuntimeOptions,
    settings: GenerationSettings,
    prompt: str,
    capacity: int,
    max_seq_len: int,
    stream: bool = False,
    json_output: bool = False,
) -> int:
    if capacity <= 0:
        raise SessionCommandError(f"--capacity must be > 0, got {capacity}")

    def _on_text(text: str, _user_data: Any) -> bool:
        sys.stdout.write(text)
        sys.stdout.flush()
        return True

    output = bytearray(capacity)
    with _open_session(config, options, settings, max_seq_len) as session:
        try:
            n = session.generate(prompt, output, capacity, stream_callback=_on_text if stream else None)
        except OutputOverflowError as exc:
            raise SessionCommandError(
                f"Reply needs {exc.needed} bytes but --capacity is {exc.capacity}; raise --capacity."
            ) from exc
        except GemmaSessionError as exc:
            raise SessionCommandError(f"generate failed: {exc}") from exc
        info = session.model_info

    text = output[:n].decode("utf-8")
    if stream:
        print()
    elif json_output:
        print_json({"text": text, "bytes": n, "kv_cache": info["kv_cache"]})
    else:
        print(text)
    return 0


@contextlib.contextmanager
def _open_session(
    config: ModelConfiguration,
    options: RuntimeOptions,
    settings: GenerationSettings,
    max_seq_len: int,
) -> Iterator[Session]:
    try:
        session = Session(config, runtime_options=options, settings=settings, max_seq_len=max_seq_len)
    except GemmaSessionError as exc:
        raise SessionCommandError(str(exc)) from exc
    logger.debug("Opened %r", session)
    try:
        yield session
    finally:
        session.close()
