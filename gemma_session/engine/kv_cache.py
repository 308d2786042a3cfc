"""Fixed-capacity KV cache handle owned by a session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass
class KVCache:
    """Attention key/value state for one sequence.

    The capacity (`max_seq_len`) is fixed at construction. The adapter stores
    its backend cache object in `past_key_values` and advances `pos` after each
    successful write; `reset()` logically empties the cache without
    reallocating the handle.
    """

    max_seq_len: int
    num_layers: int
    num_kv_heads: int
    head_dim: int
    bytes_per_element: int = 2
    pos: int = 0
    past_key_values: Any = None

    @classmethod
    def create(cls, model_config: Mapping[str, Any], max_seq_len: int) -> "KVCache":
        """Size a cache for `max_seq_len` tokens of the given architecture.

        Args:
            model_config: Architecture parameters reported by the adapter
                (`num_hidden_layers`, `num_key_value_heads`, `head_dim`,
                optionally `bytes_per_element`).
            max_seq_len: Maximum number of tokens the cache can hold.

        Raises:
            ValueError: If any size is missing or not positive.
        """
        if max_seq_len <= 0:
            raise ValueError(f"max_seq_len must be > 0, got {max_seq_len}")

        def _positive(key: str, default: Any = None) -> int:
            raw = model_config.get(key, default)
            try:
                value = int(raw)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Model config is missing a valid {key!r}.") from exc
            if value <= 0:
                raise ValueError(f"Model config {key!r} must be > 0, got {value}")
            return value

        return cls(
            max_seq_len=int(max_seq_len),
            num_layers=_positive("num_hidden_layers"),
            num_kv_heads=_positive("num_key_value_heads"),
            head_dim=_positive("head_dim"),
            bytes_per_element=_positive("bytes_per_element", 2),
        )

    @property
    def remaining(self) -> int:
        return self.max_seq_len - self.pos

    @property
    def estimated_bytes(self) -> int:
        """Upper bound of K+V storage at full capacity."""
        return 2 * self.num_layers * self.num_kv_heads * self.head_dim * self.max_seq_len * self.bytes_per_element

    def advance(self, n: int) -> None:
        if n < 0:
            raise ValueError(f"Cannot advance KV cache by {n}")
        if self.pos + n > self.max_seq_len:
            raise ValueError(
                f"KV cache overflow: pos={self.pos} + {n} exceeds max_seq_len={self.max_seq_len}"
            )
        self.pos += n

    def reset(self) -> None:
        self.pos = 0
        self.past_key_values = None

    def info(self) -> dict[str, Any]:
        return {
            "max_seq_len": self.max_seq_len,
            "pos": self.pos,
            "remaining": self.remaining,
            "estimated_bytes": self.estimated_bytes,
        }
