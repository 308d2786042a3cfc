"""Model registry.

Maps model-type identifiers to model metadata, weight-format names to torch
dtype names, and model families to their adapter classes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Type

from .adapters.base import BaseAdapter
from .adapters.gemma import GemmaAdapter


Training = Literal["it", "pt"]


@dataclass(frozen=True)
class ModelInfo:
    """Static facts about a model type."""

    model_type: str
    family: str
    training: Training

    @property
    def instruction_tuned(self) -> bool:
        return self.training == "it"


def _info(model_type: str, family: str) -> ModelInfo:
    training: Training = "it" if model_type.endswith("-it") else "pt"
    return ModelInfo(model_type=model_type, family=family, training=training)


_MODEL_TYPES: dict[str, ModelInfo] = {
    info.model_type: info
    for info in (
        _info("2b-it", "gemma"),
        _info("2b-pt", "gemma"),
        _info("7b-it", "gemma"),
        _info("7b-pt", "gemma"),
        _info("gemma2-2b-it", "gemma2"),
        _info("gemma2-2b-pt", "gemma2"),
        _info("9b-it", "gemma2"),
        _info("9b-pt", "gemma2"),
        _info("27b-it", "gemma2"),
        _info("27b-pt", "gemma2"),
    )
}

# Weight format name -> torch dtype attribute name.
_WEIGHT_TYPES: dict[str, str] = {
    "f32": "float32",
    "bf16": "bfloat16",
    "f16": "float16",
}

# Registry mapping model family names to adapter classes
_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    "gemma": GemmaAdapter,
    "gemma2": GemmaAdapter,
}


def lookup_model_type(model_type: str) -> ModelInfo | None:
    """Return metadata for a model type, or None if it is unknown."""
    return _MODEL_TYPES.get(model_type)


def list_model_types() -> list[str]:
    return sorted(_MODEL_TYPES.keys())


def weight_dtype_name(weight_type: str) -> str | None:
    """Return the torch dtype name for a weight format, or None if unknown."""
    return _WEIGHT_TYPES.get(weight_type)


def list_weight_types() -> list[str]:
    return sorted(_WEIGHT_TYPES.keys())


def get_adapter(model_family: str) -> BaseAdapter:
    """
    Get an adapter instance for the given model family.

    Args:
        model_family: Name of the model family (e.g., "gemma2").

    Returns:
        A fresh, unloaded adapter instance for the model family.

    Raises:
        ValueError: If the model family is not registered.
    """
    if model_family not in _ADAPTER_REGISTRY:
        available = ", ".join(_ADAPTER_REGISTRY.keys())
        raise ValueError(
            f"Unknown model family: {model_family!r}. Available: {available}"
        )
    return _ADAPTER_REGISTRY[model_family]()


def register_adapter(model_family: str, adapter_cls: Type[BaseAdapter]) -> None:
    """
    Register a new adapter for a model family.

    Args:
        model_family: Name of the model family.
        adapter_cls: Adapter class (must inherit from BaseAdapter).
    """
    if not (isinstance(adapter_cls, type) and issubclass(adapter_cls, BaseAdapter)):
        raise TypeError(f"Adapter for {model_family!r} must subclass BaseAdapter.")
    _ADAPTER_REGISTRY[model_family] = adapter_cls


def list_model_families() -> list[str]:
    """Return list of registered model family names."""
    return list(_ADAPTER_REGISTRY.keys())
