import ctypes
import logging

import pytest


pytest.importorskip("torch", reason="torch not installed")


from gemma_session.capi import (
    gemma_count_tokens,
    gemma_create,
    gemma_destroy,
    gemma_generate,
    gemma_generate_ex,
)
from gemma_session.engine.errors import FAILURE


@pytest.fixture
def session(model_files, fake_adapter_cls):
    tok, weights = model_files
    s = gemma_create(tok, "2b-it", weights, "bf16")
    assert s is not None
    yield s
    gemma_destroy(s)


def test_failure_sentinel_is_minus_one() -> None:
    assert FAILURE == -1


def test_create_returns_none_on_bad_config(tmp_path, fake_adapter_cls, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="gemma_session.capi"):
        s = gemma_create(str(tmp_path / "missing"), "2b-it", str(tmp_path), "bf16")
    assert s is None
    assert "tokenizer_path" in caplog.text


def test_create_returns_none_on_load_failure(model_files, fake_adapter_cls) -> None:
    fake_adapter_cls.fail_on_load = True
    tok, weights = model_files
    assert gemma_create(tok, "2b-it", weights, "bf16") is None


def test_generate_into_ctypes_buffer(session) -> None:
    out = ctypes.create_string_buffer(64)
    n = gemma_generate(session, b"hi", out, 64)
    assert n == len("Hello there.")
    assert out.value == b"Hello there."


def test_generate_ex_streams_to_callback(session) -> None:
    seen = []
    out = bytearray(64)
    n = gemma_generate_ex(session, "hi", out, 64, lambda text, data: seen.append((text, data)) or True, 42)
    assert n == len("Hello there.")
    assert "".join(t for t, _ in seen) == "Hello there."
    assert {d for _, d in seen} == {42}


def test_generate_reports_overflow_as_failure(session) -> None:
    out = bytearray(4)
    assert gemma_generate(session, "hi", out, 4) == FAILURE
    assert out == bytearray(4)


@pytest.mark.parametrize(
    "prompt,max_length",
    [(None, 64), ("hi", 0), ("hi", -5)],
)
def test_generate_invalid_arguments(session, prompt, max_length) -> None:
    assert gemma_generate(session, prompt, bytearray(64), max_length) == FAILURE


def test_generate_without_session() -> None:
    assert gemma_generate(None, "hi", bytearray(8), 8) == FAILURE
    assert gemma_count_tokens(None, "hi") == FAILURE


def test_count_tokens(session) -> None:
    assert gemma_count_tokens(session, "Hi") == 11
    assert gemma_count_tokens(session, "") == 9
    assert gemma_count_tokens(session, None) == FAILURE


def test_destroyed_session_fails_cleanly(session) -> None:
    gemma_destroy(session)
    gemma_destroy(session)
    gemma_destroy(None)
    assert gemma_generate(session, "hi", bytearray(64), 64) == FAILURE
    assert gemma_count_tokens(session, "hi") == FAILURE


def test_unexpected_callback_error_is_contained(session) -> None:
    def _cb(text, data):
        raise KeyError("boom")

    assert gemma_generate_ex(session, "hi", bytearray(64), 64, _cb, None) == FAILURE
    # Next call works.
    assert gemma_generate(session, "hi", bytearray(64), 64) == len("Hello there.")
