"""Exception types raised by the session layer.

Internal callers (tests, the CLI, other Python code) receive these structured
exceptions. Only `gemma_session.capi` flattens them into the `-1` sentinel.
"""

from __future__ import annotations

import enum


FAILURE = -1


class Status(enum.IntEnum):
    """Failure category carried by every `SessionError`."""

    OK = 0
    INVALID_ARGUMENT = 1
    SESSION_CLOSED = 2
    TOKENIZATION_FAILED = 3
    GENERATION_FAILED = 4
    OUTPUT_OVERFLOW = 5


class GemmaSessionError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(GemmaSessionError, ValueError):
    """A model-loading or generation parameter is invalid.

    `field` names the offending parameter (e.g. "weights_path").
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid {field}: {message}")
        self.field = field
        self.reason = message


class SessionCreationError(GemmaSessionError, RuntimeError):
    """Loading the model or allocating session resources failed."""


class SessionError(GemmaSessionError):
    """A recoverable failure of `generate` / `count_tokens`."""

    status: Status = Status.GENERATION_FAILED


class InvalidArgumentError(SessionError, ValueError):
    status = Status.INVALID_ARGUMENT


class SessionClosedError(SessionError):
    status = Status.SESSION_CLOSED


class TokenizationError(SessionError):
    status = Status.TOKENIZATION_FAILED


class GenerationError(SessionError):
    status = Status.GENERATION_FAILED


class OutputOverflowError(SessionError):
    """The generated text does not fit the caller's declared capacity."""

    status = Status.OUTPUT_OVERFLOW

    def __init__(self, *, needed: int, capacity: int) -> None:
        super().__init__(
            f"Output needs {needed} bytes including terminator, capacity is {capacity}."
        )
        self.needed = needed
        self.capacity = capacity
