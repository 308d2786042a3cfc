"""Model-loading and generation configuration.

`ModelConfiguration.validate()` is the fail-fast gate in front of every
heavyweight allocation: it only inspects strings and the filesystem, and
raises `ConfigurationError` naming exactly one offending field.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from .errors import ConfigurationError
from .registry import (
    ModelInfo,
    list_model_types,
    list_weight_types,
    lookup_model_type,
    weight_dtype_name,
)


DEFAULT_MAX_SEQ_LEN = 2048

# Files that make a directory usable as a tokenizer location.
_TOKENIZER_FILES = ("tokenizer.json", "tokenizer.model", "tokenizer_config.json")
_TOKENIZER_SUFFIXES = (".json", ".model", ".spm")


@dataclass(frozen=True)
class ModelConfiguration:
    """Where to find the model and in which numeric format its weights are stored."""

    tokenizer_path: str
    model_type: str
    weights_path: str
    weight_type: str = "bf16"

    @property
    def model_info(self) -> ModelInfo:
        info = lookup_model_type(self.model_type)
        if info is None:
            raise ConfigurationError("model_type", _unknown(self.model_type, list_model_types()))
        return info

    @property
    def dtype_name(self) -> str:
        name = weight_dtype_name(self.weight_type)
        if name is None:
            raise ConfigurationError("weight_type", _unknown(self.weight_type, list_weight_types()))
        return name

    def normalized(self) -> "ModelConfiguration":
        return ModelConfiguration(
            tokenizer_path=_normalize_path(self.tokenizer_path),
            model_type=(self.model_type or "").strip().lower(),
            weights_path=_normalize_path(self.weights_path),
            weight_type=(self.weight_type or "").strip().lower(),
        )

    def validate(self) -> "ModelConfiguration":
        """Return a normalized copy, or raise ConfigurationError.

        Fields are checked in order: tokenizer, model type, weights, weight type.
        """
        cfg = self.normalized()
        _check_tokenizer(cfg.tokenizer_path)
        _ = cfg.model_info
        _check_readable("weights_path", cfg.weights_path, what="weights")
        _ = cfg.dtype_name
        return cfg


def validate_model_config(
    tokenizer_path: str,
    model_type: str,
    weights_path: str,
    weight_type: str,
) -> ModelConfiguration:
    """Build and validate a ModelConfiguration from the four loader strings."""
    return ModelConfiguration(
        tokenizer_path=tokenizer_path,
        model_type=model_type,
        weights_path=weights_path,
        weight_type=weight_type,
    ).validate()


@dataclass(frozen=True)
class GenerationSettings:
    """Sampling defaults applied to every `generate` call.

    Notes:
    - `deterministic` seeds the session generator with a fixed constant so
      freshly created sessions reproduce each other.
    - `multiturn` keeps the KV cache between calls instead of resetting it.
    """

    temperature: float = 0.7
    top_k: int = 1
    max_generated_tokens: int = 2048
    deterministic: bool = False
    multiturn: bool = False
    seed: int | None = None

    def __post_init__(self) -> None:
        # Values may come from CLI strings or foreign callers; normalize them once.
        for f in fields(self):
            object.__setattr__(self, f.name, _coerce_setting(f.name, getattr(self, f.name)))

    def validate(self) -> None:
        if self.temperature < 0:
            raise ConfigurationError("temperature", f"must be >= 0, got {self.temperature}")
        if self.top_k < 1:
            raise ConfigurationError("top_k", f"must be >= 1, got {self.top_k}")
        if self.max_generated_tokens < 1:
            raise ConfigurationError(
                "max_generated_tokens", f"must be >= 1, got {self.max_generated_tokens}"
            )
        if self.seed is not None and self.seed < 0:
            raise ConfigurationError("seed", f"must be >= 0, got {self.seed}")

    def merged(self, override: Any | None) -> "GenerationSettings":
        """Merge a per-call override (mapping or GenerationSettings)."""
        if override is None:
            return self
        if isinstance(override, GenerationSettings):
            override.validate()
            return override
        if not isinstance(override, Mapping):
            raise ConfigurationError("settings", "override must be a mapping.")
        if not override:
            return self

        known = {f.name for f in fields(self)}
        unknown = sorted(set(override) - known)
        if unknown:
            raise ConfigurationError("settings", f"unknown field(s): {', '.join(unknown)}")

        data: dict[str, Any] = {}
        for name, value in override.items():
            if value is None and name != "seed":
                continue
            data[name] = _coerce_setting(name, value)

        merged = replace(self, **data)
        merged.validate()
        return merged


@dataclass(frozen=True)
class RuntimeOptions:
    """Compute runtime options.

    `max_threads=0` uses every available core. `max_packages` caps how many
    CPU sockets the threads are spread over. `spin=False` selects blocking
    waits for idle worker threads.
    """

    max_threads: int = 0
    max_packages: int = 1
    verbosity: int = 0
    spin: bool = False
    device: str = "cpu"

    def validate(self) -> None:
        if self.max_threads < 0:
            raise ConfigurationError("max_threads", f"must be >= 0, got {self.max_threads}")
        if self.max_packages < 1:
            raise ConfigurationError("max_packages", f"must be >= 1, got {self.max_packages}")
        if self.verbosity < 0:
            raise ConfigurationError("verbosity", f"must be >= 0, got {self.verbosity}")
        if not self.device:
            raise ConfigurationError("device", "must not be empty.")


def _normalize_path(path: str | os.PathLike | None) -> str:
    if path is None:
        return ""
    return os.path.expanduser(os.fspath(path).strip())


def _unknown(value: str, available: list[str]) -> str:
    return f"unknown value {value!r}. Available: {', '.join(available)}"


def _check_readable(field: str, path: str, *, what: str) -> None:
    if not path:
        raise ConfigurationError(field, f"missing {what} path.")
    if not os.path.exists(path):
        raise ConfigurationError(field, f"can't open {what} path {path!r}: no such file or directory.")
    if not os.access(path, os.R_OK):
        raise ConfigurationError(field, f"can't read {what} path {path!r}: permission denied.")


def _check_tokenizer(path: str) -> None:
    _check_readable("tokenizer_path", path, what="tokenizer")
    if os.path.isdir(path):
        if not any(os.path.isfile(os.path.join(path, name)) for name in _TOKENIZER_FILES):
            raise ConfigurationError(
                "tokenizer_path",
                f"incompatible tokenizer: {path!r} contains none of {', '.join(_TOKENIZER_FILES)}.",
            )
        return
    if not path.endswith(_TOKENIZER_SUFFIXES):
        raise ConfigurationError(
            "tokenizer_path",
            f"incompatible tokenizer: expected a {'/'.join(_TOKENIZER_SUFFIXES)} file, got {path!r}.",
        )


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(name, "must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(name, "must be an integer.") from exc


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(name, "must be a number.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(name, "must be a number.") from exc


def _coerce_setting(name: str, value: Any) -> Any:
    if name in {"deterministic", "multiturn"}:
        if not isinstance(value, bool):
            raise ConfigurationError(name, "must be a boolean.")
        return value
    if name == "temperature":
        return _coerce_float(value, name)
    if name == "seed" and value is None:
        return None
    return _coerce_int(value, name)
