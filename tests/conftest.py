import os
import sys

import pytest


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.cli.main without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


BOS_ID = 2
EOS_ID = 1
START_OF_TURN_ID = 106
END_OF_TURN_ID = 107
MODEL_ID = 108
USER_ID = 109
CHAR_OFFSET = 1000


class FakeTokenizer:
    """Character-level tokenizer with Gemma's chat control tokens."""

    bos_token_id = BOS_ID
    eos_token_id = EOS_ID

    _pieces = {
        "<start_of_turn>": START_OF_TURN_ID,
        "<end_of_turn>": END_OF_TURN_ID,
        "model": MODEL_ID,
        "user": USER_ID,
    }

    def __init__(self) -> None:
        self._id_to_piece = {v: k for k, v in self._pieces.items()}
        self._id_to_piece[BOS_ID] = "<bos>"
        self._id_to_piece[EOS_ID] = "<eos>"
        self.encode_calls = 0

    def encode(self, text: str, *, add_special_tokens: bool = False):
        _ = add_special_tokens
        self.encode_calls += 1
        ids: list[int] = []
        i = 0
        while i < len(text):
            for piece, tid in self._pieces.items():
                if text.startswith(piece, i):
                    ids.append(tid)
                    i += len(piece)
                    break
            else:
                ids.append(CHAR_OFFSET + ord(text[i]))
                i += 1
        return ids

    def decode(self, ids, *, skip_special_tokens: bool = False):
        out: list[str] = []
        for tid in ids:
            tid = int(tid)
            if tid >= CHAR_OFFSET:
                out.append(chr(tid - CHAR_OFFSET))
            elif tid in self._id_to_piece:
                if not skip_special_tokens:
                    out.append(self._id_to_piece[tid])
            else:
                raise ValueError(f"unknown token id {tid}")
        return "".join(out)


@pytest.fixture
def fake_tokenizer() -> FakeTokenizer:
    return FakeTokenizer()


@pytest.fixture
def model_files(tmp_path):
    """A tokenizer file and a weights directory that pass configuration checks."""
    tokenizer = tmp_path / "tokenizer.model"
    tokenizer.write_bytes(b"\x00")
    weights = tmp_path / "weights"
    weights.mkdir()
    (weights / "model.safetensors").write_bytes(b"\x00")
    return str(tokenizer), str(weights)


@pytest.fixture
def fake_adapter_cls(monkeypatch):
    """Register a scripted adapter for every Gemma family and return its class."""
    torch = pytest.importorskip("torch", reason="torch not installed")

    from gemma_session.engine import registry
    from gemma_session.engine.adapters.base import BaseAdapter

    class FakeAdapter(BaseAdapter):
        # Reply produced for greedy sampling.
        reply = "Hello there."
        # Words drawn with the session generator when sampling is random.
        vocabulary = ["alpha ", "beta ", "gamma ", "delta ", "epsilon "]
        fail_on_load = False
        fail_on_generate = False
        end_with_eos = True
        instances: list = []

        def __init__(self) -> None:
            self._tokenizer = None
            self.loaded = False
            self.unload_calls = 0
            self.calls: list[dict] = []
            FakeAdapter.instances.append(self)

        def load(self, config, pools) -> None:
            if self.fail_on_load:
                raise RuntimeError("weights are corrupt")
            self._tokenizer = FakeTokenizer()
            self.loaded = True
            self.pools = pools

        @property
        def tokenizer(self):
            return self._tokenizer

        @property
        def model_config(self):
            return {"num_hidden_layers": 2, "num_key_value_heads": 1, "head_dim": 4}

        def unload(self) -> None:
            self.unload_calls += 1
            self.loaded = False

        def _reply_ids(self, runtime_config, prompt_ids) -> list[int]:
            if runtime_config.top_k > 1 and runtime_config.temperature > 0:
                picks = torch.randint(
                    len(self.vocabulary), (8,), generator=runtime_config.generator
                ).tolist()
                text = "".join(self.vocabulary[i] for i in picks)
            else:
                text = self.reply
            ids = self._tokenizer.encode(text)
            if MODEL_ID in prompt_ids:
                ids.append(END_OF_TURN_ID)
            if self.end_with_eos:
                ids.append(EOS_ID)
            return ids

        def generate(self, runtime_config, prompt_ids, start_pos, kv_cache, timing) -> str:
            self.calls.append(
                {"prompt_ids": list(prompt_ids), "start_pos": start_pos, "kv_pos": kv_cache.pos}
            )
            if self.fail_on_generate:
                raise RuntimeError("device lost")
            kv_cache.advance(len(prompt_ids))
            timing.prompt_tokens = len(prompt_ids)
            for tid in prompt_ids:
                if not runtime_config.stream_token(tid, 0.0):
                    return "callback"
            for tid in self._reply_ids(runtime_config, prompt_ids):
                if timing.generated_tokens >= runtime_config.max_generated_tokens:
                    return "length"
                timing.generated_tokens += 1
                if not runtime_config.stream_token(tid, 1.0):
                    return "stop" if tid == EOS_ID else "callback"
                if tid == EOS_ID:
                    return "stop"
                if kv_cache.remaining <= 0:
                    return "cache_full"
                kv_cache.advance(1)
            return "length"

    for family in registry.list_model_families():
        monkeypatch.setitem(registry._ADAPTER_REGISTRY, family, FakeAdapter)
    return FakeAdapter


@pytest.fixture
def make_session(model_files, fake_adapter_cls):
    """Factory for sessions backed by the scripted adapter; closes them afterwards."""
    from gemma_session.engine.config import ModelConfiguration
    from gemma_session.engine.session import Session

    tokenizer_path, weights_path = model_files
    created = []

    def _make(model_type: str = "2b-it", **kwargs):
        config = ModelConfiguration(tokenizer_path, model_type, weights_path, "bf16")
        session = Session(config, **kwargs)
        created.append(session)
        return session

    yield _make
    for session in created:
        session.close()
