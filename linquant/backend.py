"""
linquant Backend Dispatch
=========================

Selects how the elementwise quantize / dequantize transforms execute:

  1. **Triton** — a fused elementwise kernel (one launch per transform,
     per-channel scales gathered in-kernel). Requires CUDA and Triton, and is
     used only for contiguous float16/float32 CUDA tensors.
  2. **Eager** — vectorised PyTorch ops. Always works, on any device and
     for every supported dtype.

The backend is detected on first use and cached. Override it with
:func:`set_backend` or the ``LINQUANT_BACKEND`` environment variable
(``"eager"`` or ``"triton"``).

Usage::

    from linquant.backend import get_backend, set_backend

    print(get_backend().value)  # "triton" on a CUDA box with Triton
    set_backend("eager")
"""

from __future__ import annotations

import enum
import logging
import os

import torch

logger = logging.getLogger(__name__)

ENV_VAR = "LINQUANT_BACKEND"

_TRITON_DTYPES = (torch.float16, torch.float32)


class BackendType(enum.Enum):
    """Available compute backends."""

    EAGER = "eager"
    TRITON = "triton"


# ---------------------------------------------------------------------------
# Capability detection
# ---------------------------------------------------------------------------


def _has_cuda() -> bool:
    return torch.cuda.is_available()


def _has_triton() -> bool:
    from linquant.triton_kernels import has_triton

    return has_triton()


def detect_best_backend() -> BackendType:
    """Auto-detect the best available backend."""
    env = os.environ.get(ENV_VAR, "").lower().strip()
    if env in ("eager", "triton"):
        return BackendType(env)
    if env:
        logger.warning("Ignoring unknown %s=%r", ENV_VAR, env)

    if _has_triton():
        return BackendType.TRITON
    return BackendType.EAGER


# ---------------------------------------------------------------------------
# Global backend state
# ---------------------------------------------------------------------------

_active_backend: BackendType | None = None


def get_backend() -> BackendType:
    """Return the currently active backend, auto-detecting if needed."""
    global _active_backend
    if _active_backend is None:
        _active_backend = detect_best_backend()
        logger.info("linquant backend: %s", _active_backend.value)
    return _active_backend


def set_backend(backend: str | BackendType) -> None:
    """
    Override the active backend.

    Args:
        backend: ``"eager"`` or ``"triton"`` (or a :class:`BackendType`).
    """
    global _active_backend
    if isinstance(backend, str):
        backend = BackendType(backend.lower())
    _active_backend = backend
    logger.info("linquant backend set to: %s", backend.value)


def should_use_triton(tensor: torch.Tensor) -> bool:
    """True when ``tensor`` can be handled by the Triton kernels right now."""
    if get_backend() != BackendType.TRITON:
        return False
    ok = tensor.is_cuda and tensor.dtype in _TRITON_DTYPES and tensor.numel() > 0
    if not ok:
        logger.debug(
            "eager path for tensor on %s with dtype %s", tensor.device, tensor.dtype
        )
    return ok and _has_triton()


# ---------------------------------------------------------------------------
# Info / diagnostic
# ---------------------------------------------------------------------------


def backend_info() -> dict[str, object]:
    """Return diagnostic info about the active backend and capabilities."""
    return {
        "active_backend": get_backend().value,
        "cuda_available": _has_cuda(),
        "triton_available": _has_triton(),
        "gpu_name": torch.cuda.get_device_name() if _has_cuda() else None,
        "compute_capability": (
            torch.cuda.get_device_capability() if _has_cuda() else None
        ),
        "env_override": os.environ.get(ENV_VAR) or None,
    }
