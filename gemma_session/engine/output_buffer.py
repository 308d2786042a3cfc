"""Result accumulation and capacity-checked copy into caller buffers.

Internally the reply grows in an owned `ResultBuffer`. Only at the boundary is
it copied into a fixed-size caller buffer, as UTF-8 followed by a NUL
terminator. A reply whose encoded length is >= the declared capacity is
refused outright, never truncated.
"""

from __future__ import annotations

import ctypes
from typing import Any

from .errors import InvalidArgumentError, OutputOverflowError


class ResultBuffer:
    """Growable buffer of decoded reply fragments."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._nbytes = 0

    def append(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        self._nbytes += len(text.encode("utf-8"))

    def clear(self) -> None:
        self._parts.clear()
        self._nbytes = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def nbytes(self) -> int:
        """Encoded UTF-8 length, excluding any terminator."""
        return self._nbytes

    def __len__(self) -> int:
        return self._nbytes

    def copy_to(self, output: Any, capacity: int) -> int:
        """Copy the reply into a caller buffer; see `write_output`."""
        check_output(output, capacity)
        if self._nbytes >= capacity:
            raise OutputOverflowError(needed=self._nbytes + 1, capacity=capacity)
        return write_output(self.text, output, capacity)


def buffer_size(output: Any) -> int:
    """Size in bytes of a writable caller buffer."""
    if isinstance(output, ctypes.Array):
        return ctypes.sizeof(output)
    try:
        view = memoryview(output)
    except TypeError as exc:
        raise InvalidArgumentError(
            f"Output must be a writable buffer, got {type(output).__name__}."
        ) from exc
    with view:
        if view.readonly:
            raise InvalidArgumentError("Output buffer is read-only.")
        return view.nbytes


def check_output(output: Any, capacity: int) -> int:
    """Validate a caller buffer and its declared capacity before any work is done.

    Returns:
        The buffer size in bytes.
    """
    if output is None:
        raise InvalidArgumentError("Output buffer must not be None.")
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
        raise InvalidArgumentError(f"Capacity must be a positive integer, got {capacity!r}.")

    size = buffer_size(output)
    if capacity > size:
        raise InvalidArgumentError(f"Declared capacity {capacity} exceeds buffer size {size}.")
    return size


def write_output(text: str, output: Any, capacity: int) -> int:
    """Copy `text` into `output` as UTF-8 plus a NUL terminator.

    Args:
        text: Reply text to copy.
        output: `bytearray`, writable `memoryview`, or ctypes char array.
        capacity: Bytes the caller accepts, terminator included.

    Returns:
        Number of bytes written, excluding the terminator.

    Raises:
        InvalidArgumentError: Non-positive capacity, or capacity larger than the buffer.
        OutputOverflowError: The encoded text does not leave room for the terminator.
    """
    check_output(output, capacity)

    data = text.encode("utf-8")
    if len(data) >= capacity:
        raise OutputOverflowError(needed=len(data) + 1, capacity=capacity)

    payload = data + b"\0"
    if isinstance(output, ctypes.Array):
        ctypes.memmove(output, payload, len(payload))
    else:
        with memoryview(output) as view, view.cast("B") as raw:
            raw[: len(payload)] = payload
    return len(data)
