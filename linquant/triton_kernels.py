"""
linquant Triton Kernels
=======================

Fused elementwise kernels for linear quantization and dequantization.

Both kernels treat the input as a flat contiguous buffer. A per-channel
scale is gathered per element from its flat offset::

    channel = (offset // inner) % channels

where ``inner`` is the product of the dimensions after ``quant_axis``.
Per-tensor mode is the special case ``channels == 1``, so one kernel covers
both granularities. Arithmetic runs in float32; the result is stored in the
input's dtype.

Requires: ``pip install triton>=2.1.0``
"""

from __future__ import annotations

import math

import torch

try:
    import triton
    import triton.language as tl

    _HAS_TRITON = True
except ImportError:
    _HAS_TRITON = False

from linquant.core import SCALE_EPSILON, WHOLE_TENSOR_AXIS, RoundType

_DEFAULT_BLOCK = 1024


def has_triton() -> bool:
    """Return True if Triton is importable *and* a CUDA device is available."""
    return _HAS_TRITON and torch.cuda.is_available()


# ── Kernels ─────────────────────────────────────────────────────────────────

if _HAS_TRITON:

    @triton.jit
    def _clip_fake_quant_kernel(
        x_ptr,
        scale_ptr,
        out_ptr,
        n_elements,
        inner,
        channels,
        bin_cnt,
        eps,
        ROUND_AWAY: tl.constexpr,
        BLOCK: tl.constexpr,
    ):
        """
        q = round(clip(x, -s, s) / s * bin_cnt), clamped to [-bin_cnt-1, bin_cnt].

        Grid: (cdiv(n_elements, BLOCK),)
        """
        pid = tl.program_id(0)
        offsets = pid * BLOCK + tl.arange(0, BLOCK)
        mask = offsets < n_elements

        x = tl.load(x_ptr + offsets, mask=mask, other=0.0).to(tl.float32)
        ch = (offsets // inner) % channels
        s = tl.load(scale_ptr + ch, mask=mask, other=1.0).to(tl.float32)
        s = tl.maximum(s, eps)

        x = tl.minimum(tl.maximum(x, -s), s)
        v = x / s * bin_cnt

        if ROUND_AWAY:
            # Round half away from zero on the exact fraction of |v|
            a = tl.abs(v)
            f = tl.math.floor(a)
            d = a - f
            q = tl.where(d >= 0.5, f + 1.0, f)
            q = tl.where(v < 0, -q, q)
        else:
            # Round half to even
            f = tl.math.floor(v)
            d = v - f
            is_even = (f - 2.0 * tl.math.floor(f * 0.5)) == 0.0
            tie = tl.where(is_even, f, f + 1.0)
            q = tl.where(d > 0.5, f + 1.0, tl.where(d < 0.5, f, tie))

        q = tl.minimum(tl.maximum(q, -bin_cnt - 1.0), bin_cnt)
        tl.store(out_ptr + offsets, q.to(out_ptr.dtype.element_ty), mask=mask)

    @triton.jit
    def _dequantize_kernel(
        x_ptr,
        scale_ptr,
        out_ptr,
        n_elements,
        inner,
        channels,
        max_range,
        BLOCK: tl.constexpr,
    ):
        """
        y = x * s / max_range

        Grid: (cdiv(n_elements, BLOCK),)
        """
        pid = tl.program_id(0)
        offsets = pid * BLOCK + tl.arange(0, BLOCK)
        mask = offsets < n_elements

        x = tl.load(x_ptr + offsets, mask=mask, other=0.0).to(tl.float32)
        ch = (offsets // inner) % channels
        s = tl.load(scale_ptr + ch, mask=mask, other=0.0).to(tl.float32)

        y = x * s / max_range
        tl.store(out_ptr + offsets, y.to(out_ptr.dtype.element_ty), mask=mask)


# ── Python wrappers ─────────────────────────────────────────────────────────


def _channel_layout(shape: torch.Size, quant_axis: int) -> tuple[int, int]:
    """Return ``(inner, channels)`` for the flat channel gather."""
    if quant_axis == WHOLE_TENSOR_AXIS:
        return max(math.prod(shape), 1), 1
    return math.prod(shape[quant_axis + 1:]), shape[quant_axis]


def _check_inputs(tensor: torch.Tensor, name: str) -> None:
    if not _HAS_TRITON:
        raise RuntimeError("Triton is not installed. Install with: pip install triton")
    if not tensor.is_cuda:
        raise RuntimeError(f"{name} requires CUDA tensors")


def triton_clip_and_fake_quant(
    tensor: torch.Tensor,
    scales: torch.Tensor,
    bin_cnt: int,
    round_type: RoundType | int = RoundType.TIES_TO_EVEN,
    quant_axis: int = WHOLE_TENSOR_AXIS,
) -> torch.Tensor:
    """
    Quantize ``tensor`` onto the integer grid in one kernel launch.

    Args:
        tensor: CUDA float16/float32 tensor.
        scales: 1-element tensor (``quant_axis == -1``) or one entry per
            channel along the non-negative ``quant_axis``.
        bin_cnt: Grid half-width.
        round_type: Tie-breaking rule.
        quant_axis: Channel axis, or ``-1`` for a single scale.

    Returns:
        Tensor with the shape and dtype of ``tensor``.
    """
    _check_inputs(tensor, "triton_clip_and_fake_quant")

    x = tensor.contiguous()
    s = scales.to(device=x.device, dtype=torch.float32).contiguous()
    out = torch.empty_like(x)
    n = x.numel()
    inner, channels = _channel_layout(x.shape, quant_axis)

    grid = (triton.cdiv(n, _DEFAULT_BLOCK),)
    _clip_fake_quant_kernel[grid](
        x, s, out,
        n, inner, channels,
        float(bin_cnt), SCALE_EPSILON,
        ROUND_AWAY=RoundType(round_type) == RoundType.TIES_AWAY_FROM_ZERO,
        BLOCK=_DEFAULT_BLOCK,
    )
    return out


def triton_dequantize(
    tensor: torch.Tensor,
    scales: torch.Tensor,
    max_range: float,
    quant_axis: int = WHOLE_TENSOR_AXIS,
) -> torch.Tensor:
    """Dequantize ``tensor * scale / max_range`` in one kernel launch."""
    _check_inputs(tensor, "triton_dequantize")

    x = tensor.contiguous()
    s = scales.to(device=x.device, dtype=torch.float32).contiguous()
    out = torch.empty_like(x)
    n = x.numel()
    inner, channels = _channel_layout(x.shape, quant_axis)

    grid = (triton.cdiv(n, _DEFAULT_BLOCK),)
    _dequantize_kernel[grid](
        x, s, out,
        n, inner, channels,
        float(max_range),
        BLOCK=_DEFAULT_BLOCK,
    )
    return out
