"""
linquant Core Primitives
========================

Building blocks shared by the quantize/dequantize transforms:

  - Bit-width arithmetic (``bin_count``) and the rounding policy enum
  - Error types raised by the engine
  - The closed set of supported floating-point precisions
  - Abs-max reducers (whole tensor and per channel)
  - The bias-corrected moving-average scale tracker

All functions operate on ``torch.Tensor`` objects that the caller has
already placed on the right device. ``numpy.ndarray`` inputs are accepted
and wrapped with :func:`as_tensor`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np
import torch


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BIT_LENGTH: int = 8
DEFAULT_MOVING_RATE: float = 0.9
WHOLE_TENSOR_AXIS: int = -1
SCALE_EPSILON: float = 1e-30

SUPPORTED_DTYPES: tuple[torch.dtype, ...] = (
    torch.float16,
    torch.float32,
    torch.float64,
)


class RoundType(IntEnum):
    """Rounding policy used when snapping values to the integer grid."""

    TIES_TO_EVEN = 0
    TIES_AWAY_FROM_ZERO = 1


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PreconditionNotMetError(ValueError):
    """An input violates a shape or presence precondition of a kernel."""


class UnsupportedDTypeError(TypeError):
    """A tensor carries a dtype outside :data:`SUPPORTED_DTYPES`."""


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def bin_count(bit_length: int) -> int:
    """
    Positive half-width of the signed integer grid for ``bit_length`` bits.

    ``bin_count(8) == 127``; the representable range is
    ``[-bin_count - 1, bin_count]``.
    """
    if bit_length <= 0:
        raise ValueError(f"bit_length must be positive, got {bit_length}")
    return (1 << (bit_length - 1)) - 1


def as_tensor(value: torch.Tensor | np.ndarray | float) -> torch.Tensor:
    """Wrap numpy arrays and Python scalars as tensors; pass tensors through."""
    if isinstance(value, torch.Tensor):
        return value
    if isinstance(value, np.ndarray):
        return torch.from_numpy(np.ascontiguousarray(value))
    return torch.as_tensor(value)


def check_dtype(tensor: torch.Tensor, what: str = "tensor") -> torch.dtype:
    """Return ``tensor.dtype`` or raise if it is not a supported float type."""
    if tensor.dtype not in SUPPORTED_DTYPES:
        raise UnsupportedDTypeError(
            f"data type {tensor.dtype} for {what} is not supported; "
            f"expected one of {[str(d) for d in SUPPORTED_DTYPES]}"
        )
    return tensor.dtype


def compute_dtype(dtype: torch.dtype) -> torch.dtype:
    """Arithmetic dtype for a storage dtype (half is widened to float32)."""
    return torch.float32 if dtype == torch.float16 else dtype


def normalize_axis(quant_axis: int, ndim: int) -> int:
    """Resolve a possibly negative channel axis against ``ndim``."""
    if ndim < 1:
        raise PreconditionNotMetError("per-channel quantization needs a tensor of rank >= 1")
    if not -ndim <= quant_axis < ndim:
        raise PreconditionNotMetError(
            f"quant_axis {quant_axis} is out of range for a tensor of rank {ndim}"
        )
    return quant_axis % ndim


def check_channel_scale(
    scales: torch.Tensor, shape: torch.Size, quant_axis: int
) -> None:
    """Per-channel scales must hold exactly one entry per channel."""
    expected = shape[quant_axis]
    if scales.numel() != expected:
        raise PreconditionNotMetError(
            "The number of scale values must be the same as the quant_axis "
            f"dimension of the input, but {scales.numel()} != {expected} here."
        )


def broadcast_channel(values: torch.Tensor, ndim: int, quant_axis: int) -> torch.Tensor:
    """Reshape a ``(C,)`` vector so it broadcasts along ``quant_axis``."""
    view = [1] * ndim
    view[quant_axis] = -1
    return values.reshape(view)


# ---------------------------------------------------------------------------
# AbsMax reducers
# ---------------------------------------------------------------------------


def find_abs_max(tensor: torch.Tensor) -> torch.Tensor:
    """
    Maximum absolute value over every element of ``tensor``.

    Returns:
        A 1-element tensor with the same dtype and device as the input.
        Empty tensors reduce to ``0``.
    """
    tensor = as_tensor(tensor)
    if tensor.numel() == 0:
        return tensor.new_zeros(1)
    return tensor.abs().amax().reshape(1)


def find_channel_abs_max(tensor: torch.Tensor, quant_axis: int) -> torch.Tensor:
    """
    Maximum absolute value of each slice along ``quant_axis``.

    Args:
        tensor: Input of rank >= 1.
        quant_axis: Channel axis (negative values index from the end).

    Returns:
        Tensor of shape ``(tensor.shape[quant_axis],)``.
    """
    tensor = as_tensor(tensor)
    axis = normalize_axis(quant_axis, tensor.ndim)
    abs_vals = tensor.abs()
    if tensor.ndim == 1:
        return abs_vals.clone()
    reduce_dims = tuple(d for d in range(tensor.ndim) if d != axis)
    if tensor.numel() == 0:
        return tensor.new_zeros(tensor.shape[axis])
    return abs_vals.amax(dim=reduce_dims)


# ---------------------------------------------------------------------------
# Moving-average scale tracker
# ---------------------------------------------------------------------------


def find_moving_average_abs_max(
    cur_scale: torch.Tensor,
    in_accum: torch.Tensor,
    in_state: torch.Tensor,
    moving_rate: float = DEFAULT_MOVING_RATE,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Bias-corrected exponential moving average of observed abs-max values.

    Computes::

        state' = state * moving_rate + 1
        accum' = accum * moving_rate + cur
        scale  = accum' / state'

    Starting from ``(accum, state) == (0, 0)`` the first estimate equals the
    first observation exactly; ``state`` converges to ``1 / (1 - moving_rate)``.

    Args:
        cur_scale: Newly observed abs-max (1-element tensor).
        in_accum: Previous running weighted sum.
        in_state: Previous running weight.
        moving_rate: Decay factor in ``(0, 1)``.

    Returns:
        ``(out_state, out_accum, out_scale)``, each a fresh 1-element tensor.
    """
    if not 0.0 < moving_rate < 1.0:
        raise ValueError(f"moving_rate must lie in (0, 1), got {moving_rate}")

    cur = as_tensor(cur_scale).reshape(1)
    accum = as_tensor(in_accum).reshape(1).to(cur.dtype)
    state = as_tensor(in_state).reshape(1).to(cur.dtype)

    out_state = state * moving_rate + 1
    out_accum = accum * moving_rate + cur
    out_scale = out_accum / out_state
    return out_state, out_accum, out_scale


@dataclass
class MovingAverageState:
    """
    Persistent ``(accum, state)`` pair for one tracked statistic.

    Usage::

        tracker = MovingAverageState(moving_rate=0.9)
        for batch in loader:
            scale = tracker.update(find_abs_max(batch))

    Successive :meth:`update` calls must be serialised by the caller.
    """

    moving_rate: float = DEFAULT_MOVING_RATE
    accum: torch.Tensor = field(default_factory=lambda: torch.zeros(1))
    state: torch.Tensor = field(default_factory=lambda: torch.zeros(1))

    def __post_init__(self) -> None:
        if not 0.0 < self.moving_rate < 1.0:
            raise ValueError(f"moving_rate must lie in (0, 1), got {self.moving_rate}")

    @property
    def scale(self) -> torch.Tensor:
        """Current estimate (``0`` before the first observation)."""
        if float(self.state) == 0.0:
            return torch.zeros_like(self.accum)
        return self.accum / self.state

    def update(self, cur_scale: torch.Tensor) -> torch.Tensor:
        """Fold a new abs-max into the running pair and return the new scale."""
        cur = as_tensor(cur_scale).reshape(1)
        if self.accum.device != cur.device or self.accum.dtype != cur.dtype:
            self.accum = self.accum.to(device=cur.device, dtype=cur.dtype)
            self.state = self.state.to(device=cur.device, dtype=cur.dtype)
        out_state, out_accum, out_scale = find_moving_average_abs_max(
            cur, self.accum, self.state, self.moving_rate
        )
        self.state.copy_(out_state)
        self.accum.copy_(out_accum)
        return out_scale

    def reset(self) -> None:
        """Return to the ``(0, 0)`` initial pair."""
        self.accum.zero_()
        self.state.zero_()
