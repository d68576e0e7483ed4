"""
Linear Quantize / Dequantize Transforms
=======================================

Elementwise kernels that map floating-point values onto the signed integer
grid implied by an abs-max scale, and back:

    quantize:    q = round(clip(x, -s, s) / s * bin_cnt)
    dequantize:  y = q * s / bin_cnt

Quantized values stay in the input's floating dtype ("fake" quantization).
Each transform has a per-tensor form (one scalar scale) and a per-channel
form (one scale per slice along ``quant_axis``).

When the Triton backend is active and the input is a CUDA float16/float32
tensor, the transforms run as a single fused kernel launch; otherwise they
fall back to vectorised PyTorch ops.
"""

from __future__ import annotations

import logging

import torch

from linquant import backend as _backend
from linquant.core import (
    DEFAULT_BIT_LENGTH,
    SCALE_EPSILON,
    WHOLE_TENSOR_AXIS,
    PreconditionNotMetError,
    RoundType,
    as_tensor,
    bin_count,
    broadcast_channel,
    check_channel_scale,
    check_dtype,
    compute_dtype,
    normalize_axis,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------


def round_with_policy(values: torch.Tensor, round_type: RoundType | int) -> torch.Tensor:
    """
    Round to the nearest integer with an explicit tie-breaking rule.

    ``TIES_TO_EVEN`` maps 2.5 → 2 and -0.5 → -0; ``TIES_AWAY_FROM_ZERO``
    maps 2.5 → 3 and -0.5 → -1.

    Only exact ties move away from zero; the largest float below
    ``k + 0.5`` still rounds to ``k``.
    """
    round_type = RoundType(round_type)
    nearest = torch.round(values)
    if round_type == RoundType.TIES_TO_EVEN:
        return nearest
    # v - trunc(v) is exact in floating point
    whole = torch.trunc(values)
    tie = (values - whole).abs() == 0.5
    return torch.where(tie, whole + torch.sign(values), nearest)


# ---------------------------------------------------------------------------
# Eager implementations
# ---------------------------------------------------------------------------


def _scalar_scale(scale: torch.Tensor) -> torch.Tensor:
    scale = as_tensor(scale)
    if scale.numel() != 1:
        raise PreconditionNotMetError(
            f"per-tensor quantization expects a single scale value, got {scale.numel()}"
        )
    return scale.reshape(())


def _eager_quant(
    tensor: torch.Tensor,
    scale: torch.Tensor,
    bin_cnt: int,
    round_type: RoundType | int,
) -> torch.Tensor:
    work = compute_dtype(tensor.dtype)
    x = tensor.to(work)
    s = scale.to(device=tensor.device, dtype=work).clamp(min=SCALE_EPSILON)

    v = torch.clamp(x, min=-s, max=s) / s * bin_cnt
    q = round_with_policy(v, round_type).clamp(-bin_cnt - 1, bin_cnt)
    return q.to(tensor.dtype)


def _eager_dequant(
    tensor: torch.Tensor,
    scale: torch.Tensor,
    max_range: float,
) -> torch.Tensor:
    work = compute_dtype(tensor.dtype)
    s = scale.to(device=tensor.device, dtype=work)
    return (tensor.to(work) * s / max_range).to(tensor.dtype)


def _try_triton(fn, *args):
    """Run a Triton wrapper, dropping to eager for the session on failure."""
    try:
        return fn(*args)
    except Exception:
        logger.warning("Triton kernel failed, falling back to eager", exc_info=True)
        _backend.set_backend("eager")
        return None


# ---------------------------------------------------------------------------
# Quantize
# ---------------------------------------------------------------------------


def clip_and_fake_quant(
    tensor: torch.Tensor,
    scale: torch.Tensor,
    bin_cnt: int,
    round_type: RoundType | int = RoundType.TIES_TO_EVEN,
) -> torch.Tensor:
    """
    Per-tensor quantization onto the integer grid.

    Args:
        tensor: Float input of any shape.
        scale: Single abs-max scale. Values ``<= 0`` are floored to a tiny
            epsilon so the result is always finite.
        bin_cnt: Positive half-width of the grid (``127`` for 8 bits).
        round_type: Tie-breaking rule, see :class:`RoundType`.

    Returns:
        Tensor of the input's shape and dtype holding integer values in
        ``[-bin_cnt - 1, bin_cnt]``.
    """
    tensor = as_tensor(tensor)
    check_dtype(tensor, "input")
    s = _scalar_scale(scale)

    if _backend.should_use_triton(tensor):
        from linquant.triton_kernels import triton_clip_and_fake_quant

        result = _try_triton(
            triton_clip_and_fake_quant, tensor, s.reshape(1), bin_cnt, round_type, WHOLE_TENSOR_AXIS
        )
        if result is not None:
            return result

    return _eager_quant(tensor, s, bin_cnt, round_type)


def channel_clip_and_fake_quant(
    tensor: torch.Tensor,
    scales: torch.Tensor,
    bin_cnt: int,
    round_type: RoundType | int = RoundType.TIES_TO_EVEN,
    quant_axis: int = 0,
) -> torch.Tensor:
    """
    Per-channel quantization: element ``x`` uses ``scales[c]`` where ``c`` is
    its coordinate along ``quant_axis``.

    Raises:
        PreconditionNotMetError: If ``len(scales) != tensor.shape[quant_axis]``.
    """
    tensor = as_tensor(tensor)
    scales = as_tensor(scales)
    check_dtype(tensor, "input")
    axis = normalize_axis(quant_axis, tensor.ndim)
    check_channel_scale(scales, tensor.shape, axis)

    if _backend.should_use_triton(tensor):
        from linquant.triton_kernels import triton_clip_and_fake_quant

        result = _try_triton(
            triton_clip_and_fake_quant, tensor, scales.reshape(-1), bin_cnt, round_type, axis
        )
        if result is not None:
            return result

    s = broadcast_channel(scales, tensor.ndim, axis)
    return _eager_quant(tensor, s, bin_cnt, round_type)


# ---------------------------------------------------------------------------
# Dequantize
# ---------------------------------------------------------------------------


def dequantize_per_tensor(
    tensor: torch.Tensor,
    scale: torch.Tensor,
    max_range: float,
) -> torch.Tensor:
    """Map grid values back to floats: ``tensor * scale / max_range``."""
    tensor = as_tensor(tensor)
    check_dtype(tensor, "input")
    s = _scalar_scale(scale)

    if _backend.should_use_triton(tensor):
        from linquant.triton_kernels import triton_dequantize

        result = _try_triton(triton_dequantize, tensor, s.reshape(1), max_range, WHOLE_TENSOR_AXIS)
        if result is not None:
            return result

    return _eager_dequant(tensor, s, max_range)


def channel_dequantize(
    tensor: torch.Tensor,
    scales: torch.Tensor,
    max_range: float,
    quant_axis: int = 0,
) -> torch.Tensor:
    """
    Per-channel dequantization: ``tensor * scales[c] / max_range``.

    Raises:
        PreconditionNotMetError: If ``len(scales) != tensor.shape[quant_axis]``.
    """
    tensor = as_tensor(tensor)
    scales = as_tensor(scales)
    check_dtype(tensor, "input")
    axis = normalize_axis(quant_axis, tensor.ndim)
    check_channel_scale(scales, tensor.shape, axis)

    if _backend.should_use_triton(tensor):
        from linquant.triton_kernels import triton_dequantize

        result = _try_triton(triton_dequantize, tensor, scales.reshape(-1), max_range, axis)
        if result is not None:
            return result

    s = broadcast_channel(scales, tensor.ndim, axis)
    return _eager_dequant(tensor, s, max_range)


# ---------------------------------------------------------------------------
# Quantize → dequantize in one call
# ---------------------------------------------------------------------------


def fake_quant_dequant(
    tensor: torch.Tensor,
    scale: torch.Tensor,
    bit_length: int = DEFAULT_BIT_LENGTH,
    round_type: RoundType | int = RoundType.TIES_TO_EVEN,
    quant_axis: int = WHOLE_TENSOR_AXIS,
) -> torch.Tensor:
    """
    Snap ``tensor`` to the grid and scale it back into the float domain.

    The result has at most ``2 * bin_cnt + 2`` distinct values per scale and
    lies within half a quantization step of ``clip(tensor, -s, s)``.
    """
    bin_cnt = bin_count(bit_length)
    if quant_axis < 0:
        q = clip_and_fake_quant(tensor, scale, bin_cnt, round_type)
        return dequantize_per_tensor(q, scale, bin_cnt)
    q = channel_clip_and_fake_quant(tensor, scale, bin_cnt, round_type, quant_axis)
    return channel_dequantize(q, scale, bin_cnt, quant_axis)
