# Model-family adapters
#
# Each adapter wraps one model family behind the BaseAdapter interface:
# loading, tokenization, KV cache sizing and the per-token generate loop.
#
# Adapters:
#   - base.py     Abstract interface
#   - gemma.py    Gemma / Gemma 2 on Transformers

from .base import BaseAdapter
from .gemma import GemmaAdapter

__all__ = ["BaseAdapter", "GemmaAdapter"]
