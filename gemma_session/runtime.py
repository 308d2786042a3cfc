"""Process-wide runtime setup and compute thread configuration.

`initialize()` must run once before the first session is created; `Session`
calls it for you. It is idempotent. `shutdown()` releases cached accelerator
memory and allows a later `initialize()`.
"""

from __future__ import annotations

import functools
import gc
import logging
import os
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import torch

if TYPE_CHECKING:
    from gemma_session.engine.config import RuntimeOptions

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()
_initialized = False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


def initialize(*, interop_threads: int | None = None) -> None:
    """One-time library setup. Safe to call repeatedly.

    Args:
        interop_threads: Size of torch's inter-op pool. Torch only accepts this
            before any inter-op work has started, so it is applied on the first
            call only.
    """
    global _initialized
    with _init_lock:
        if _initialized:
            return
        if interop_threads:
            try:
                torch.set_num_interop_threads(int(interop_threads))
            except RuntimeError as exc:
                logger.warning("Inter-op thread count already fixed by torch: %s", exc)
        _initialized = True
        logger.debug(
            "gemma_session runtime initialized (torch=%s, cuda=%s)",
            torch.__version__,
            is_cuda_available(),
        )


def shutdown() -> None:
    """Release cached accelerator memory. Sessions should be closed first."""
    global _initialized
    with _init_lock:
        if not _initialized:
            return
        gc.collect()
        if is_cuda_available():
            torch.cuda.empty_cache()
        _initialized = False
        logger.debug("gemma_session runtime shut down")


def is_initialized() -> bool:
    return _initialized


def resolve_device(device: str) -> str:
    """Map "auto" to "cuda" when available, else "cpu"."""
    dev = device.strip().lower()
    if dev == "auto":
        return "cuda" if is_cuda_available() else "cpu"
    if dev.startswith("cuda") and not is_cuda_available():
        raise RuntimeError(
            f"Device {device!r} requested but CUDA is not available. "
            "Ensure you have a CUDA-capable GPU and PyTorch with CUDA support."
        )
    return dev


@dataclass(frozen=True)
class ThreadPools:
    """Compute threads configured for a session."""

    num_threads: int
    max_packages: int
    spin: bool
    device: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "num_threads": self.num_threads,
            "max_packages": self.max_packages,
            "spin": self.spin,
            "device": self.device,
        }


def create_pools(options: RuntimeOptions) -> ThreadPools:
    """Configure torch intra-op threads from runtime options."""
    cores = os.cpu_count() or 1
    num_threads = options.max_threads or cores
    num_threads = max(1, min(num_threads, cores))
    torch.set_num_threads(num_threads)

    # Only read by OpenMP runtimes started after this point.
    os.environ.setdefault("OMP_WAIT_POLICY", "ACTIVE" if options.spin else "PASSIVE")

    pools = ThreadPools(
        num_threads=num_threads,
        max_packages=options.max_packages,
        spin=bool(options.spin),
        device=resolve_device(options.device),
    )
    logger.debug("Thread pools: %s", pools.as_dict())
    return pools
