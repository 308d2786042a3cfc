"""
gemma_session - Single-process inference sessions for Gemma models.

A session loads a Gemma checkpoint once and then answers prompts one call at
a time, returning only the model's reply (the echoed prompt and chat turn
markers are filtered out).

Quick Start:
    from gemma_session import ModelConfiguration, Session

    config = ModelConfiguration(
        tokenizer_path="gemma-2b-it/",
        model_type="2b-it",
        weights_path="gemma-2b-it/",
        weight_type="bf16",
    )
    with Session(config) as session:
        print(session.generate_text("Write a haiku about rain.").text)

Submodules:
    - gemma_session.engine: Session, configuration, turn filter, adapters
    - gemma_session.capi: Flat create/generate/destroy functions returning -1 on failure
    - gemma_session.runtime: Process-wide initialize()/shutdown() and thread setup
"""

from gemma_session._version import __version__
from gemma_session.engine.config import (
    GenerationSettings,
    ModelConfiguration,
    RuntimeOptions,
    validate_model_config,
)
from gemma_session.engine.errors import (
    FAILURE,
    ConfigurationError,
    GemmaSessionError,
    GenerationError,
    InvalidArgumentError,
    OutputOverflowError,
    SessionClosedError,
    SessionCreationError,
    SessionError,
    Status,
    TokenizationError,
)
from gemma_session.engine.session import Session
from gemma_session.engine.types import GenerationResult

__all__ = [
    "__version__",
    "ConfigurationError",
    "FAILURE",
    "GemmaSessionError",
    "GenerationError",
    "GenerationResult",
    "GenerationSettings",
    "InvalidArgumentError",
    "ModelConfiguration",
    "OutputOverflowError",
    "RuntimeOptions",
    "Session",
    "SessionClosedError",
    "SessionCreationError",
    "SessionError",
    "Status",
    "TokenizationError",
    "validate_model_config",
]
