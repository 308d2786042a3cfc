import os

import pytest

from gemma_session.engine.config import (
    GenerationSettings,
    ModelConfiguration,
    RuntimeOptions,
    validate_model_config,
)
from gemma_session.engine.errors import ConfigurationError


def _field_of(excinfo) -> str:
    return excinfo.value.field


def test_valid_configuration_is_normalized(model_files) -> None:
    tok, weights = model_files
    cfg = validate_model_config(f"  {tok} ", "2B-IT", weights, " BF16 ")
    assert cfg.tokenizer_path == tok
    assert cfg.model_type == "2b-it"
    assert cfg.weight_type == "bf16"
    assert cfg.dtype_name == "bfloat16"
    assert cfg.model_info.family == "gemma"
    assert cfg.model_info.instruction_tuned is True


def test_tokenizer_directory_with_tokenizer_json_is_accepted(tmp_path, model_files) -> None:
    _, weights = model_files
    tok_dir = tmp_path / "tok"
    tok_dir.mkdir()
    (tok_dir / "tokenizer.json").write_text("{}")
    cfg = validate_model_config(str(tok_dir), "gemma2-2b-pt", weights, "f32")
    assert cfg.model_info.family == "gemma2"
    assert cfg.model_info.training == "pt"


def test_missing_tokenizer_is_reported(tmp_path, model_files) -> None:
    _, weights = model_files
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config(str(tmp_path / "nope.model"), "2b-it", weights, "bf16")
    assert _field_of(excinfo) == "tokenizer_path"
    assert "no such file" in str(excinfo.value)


def test_empty_tokenizer_path_is_reported(model_files) -> None:
    _, weights = model_files
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config("", "2b-it", weights, "bf16")
    assert _field_of(excinfo) == "tokenizer_path"


def test_incompatible_tokenizer_file_is_reported(tmp_path, model_files) -> None:
    _, weights = model_files
    bogus = tmp_path / "tokenizer.txt"
    bogus.write_text("not a tokenizer")
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config(str(bogus), "2b-it", weights, "bf16")
    assert _field_of(excinfo) == "tokenizer_path"
    assert "incompatible" in excinfo.value.reason


def test_tokenizer_directory_without_tokenizer_files_is_reported(tmp_path, model_files) -> None:
    _, weights = model_files
    empty = tmp_path / "empty"
    empty.mkdir()
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config(str(empty), "2b-it", weights, "bf16")
    assert _field_of(excinfo) == "tokenizer_path"


def test_unknown_model_type_is_reported(model_files) -> None:
    tok, weights = model_files
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config(tok, "13b-it", weights, "bf16")
    assert _field_of(excinfo) == "model_type"
    assert "2b-it" in str(excinfo.value)


def test_missing_weights_are_reported(tmp_path, model_files) -> None:
    tok, _ = model_files
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config(tok, "2b-it", str(tmp_path / "missing.safetensors"), "bf16")
    assert _field_of(excinfo) == "weights_path"


@pytest.mark.skipif(
    not hasattr(os, "geteuid") or os.geteuid() == 0,
    reason="root can read files regardless of mode bits",
)
def test_unreadable_weights_are_reported(tmp_path, model_files) -> None:
    tok, _ = model_files
    weights = tmp_path / "locked.bin"
    weights.write_bytes(b"\x00")
    weights.chmod(0)
    try:
        with pytest.raises(ConfigurationError) as excinfo:
            validate_model_config(tok, "2b-it", str(weights), "bf16")
        assert _field_of(excinfo) == "weights_path"
    finally:
        weights.chmod(0o644)


def test_unknown_weight_type_is_reported(model_files) -> None:
    tok, weights = model_files
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config(tok, "2b-it", weights, "sfp")
    assert _field_of(excinfo) == "weight_type"


def test_first_invalid_field_wins(tmp_path) -> None:
    # Everything is wrong; the tokenizer is checked first.
    with pytest.raises(ConfigurationError) as excinfo:
        validate_model_config(str(tmp_path / "a"), "bogus", str(tmp_path / "b"), "bogus")
    assert _field_of(excinfo) == "tokenizer_path"


def test_validate_does_not_mutate_original(model_files) -> None:
    tok, weights = model_files
    cfg = ModelConfiguration(tok, " 7B-PT ", weights, "F16")
    validated = cfg.validate()
    assert cfg.model_type == " 7B-PT "
    assert validated.model_type == "7b-pt"


def test_generation_settings_defaults() -> None:
    s = GenerationSettings()
    s.validate()
    assert s.temperature == 0.7
    assert s.top_k == 1
    assert s.max_generated_tokens == 2048
    assert s.deterministic is False
    assert s.multiturn is False
    assert s.seed is None


@pytest.mark.parametrize(
    "kwargs,field",
    [
        ({"temperature": -0.1}, "temperature"),
        ({"top_k": 0}, "top_k"),
        ({"max_generated_tokens": 0}, "max_generated_tokens"),
        ({"seed": -1}, "seed"),
    ],
)
def test_generation_settings_rejects_bad_values(kwargs, field) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        GenerationSettings(**kwargs).validate()
    assert excinfo.value.field == field


def test_generation_settings_coerces_field_types() -> None:
    s = GenerationSettings(temperature="0.5", top_k="5", max_generated_tokens="64", seed="7")
    s.validate()
    assert (s.temperature, s.top_k, s.max_generated_tokens, s.seed) == (0.5, 5, 64, 7)


@pytest.mark.parametrize(
    "kwargs,field",
    [
        ({"top_k": "five"}, "top_k"),
        ({"top_k": None}, "top_k"),
        ({"temperature": "warm"}, "temperature"),
        ({"max_generated_tokens": True}, "max_generated_tokens"),
        ({"deterministic": "yes"}, "deterministic"),
        ({"seed": 1.5j}, "seed"),
    ],
)
def test_generation_settings_rejects_bad_types(kwargs, field) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        GenerationSettings(**kwargs)
    assert excinfo.value.field == field


def test_merged_applies_mapping_override() -> None:
    base = GenerationSettings(temperature=0.5, top_k=4)
    merged = base.merged({"max_generated_tokens": "32", "temperature": None, "multiturn": True})
    assert merged.max_generated_tokens == 32
    assert merged.temperature == 0.5
    assert merged.top_k == 4
    assert merged.multiturn is True
    # Original is untouched.
    assert base.max_generated_tokens == 2048


def test_merged_without_override_returns_self() -> None:
    base = GenerationSettings()
    assert base.merged(None) is base
    assert base.merged({}) is base


def test_merged_accepts_settings_instance() -> None:
    other = GenerationSettings(top_k=3)
    assert GenerationSettings().merged(other) is other


def test_merged_rejects_unknown_fields() -> None:
    with pytest.raises(ConfigurationError, match="unknown field"):
        GenerationSettings().merged({"top_p": 0.9})


def test_merged_rejects_bad_types() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        GenerationSettings().merged({"max_generated_tokens": "many"})
    assert excinfo.value.field == "max_generated_tokens"
    with pytest.raises(ConfigurationError):
        GenerationSettings().merged({"deterministic": "yes"})
    with pytest.raises(ConfigurationError):
        GenerationSettings().merged({"top_k": True})


def test_merged_validates_result() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        GenerationSettings().merged({"top_k": 0})
    assert excinfo.value.field == "top_k"


def test_runtime_options_validation() -> None:
    RuntimeOptions().validate()
    with pytest.raises(ConfigurationError) as excinfo:
        RuntimeOptions(max_threads=-1).validate()
    assert excinfo.value.field == "max_threads"
    with pytest.raises(ConfigurationError) as excinfo:
        RuntimeOptions(max_packages=0).validate()
    assert excinfo.value.field == "max_packages"
    with pytest.raises(ConfigurationError) as excinfo:
        RuntimeOptions(verbosity=-2).validate()
    assert excinfo.value.field == "verbosity"


def test_configuration_error_is_a_value_error() -> None:
    err = ConfigurationError("weight_type", "nope")
    assert isinstance(err, ValueError)
    assert str(err) == "Invalid weight_type: nope"
