"""
Quantize / Dequantize Orchestrators
===================================

Entry points an execution engine calls once per step:

- :func:`quantize_linear` picks, from ``is_test`` × ``quant_axis`` ×
  ``only_observer``, which of {abs-max reducer, moving-average tracker,
  quantize transform, copy} to run.
- :func:`dequantize_linear` dispatches on the precision of the scale, casts
  the input to it and runs the matching dequantize transform.

Per-tensor training smooths the scale with the moving-average tracker.
Per-channel training uses the per-call channel abs-max directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import torch

from linquant.core import (
    DEFAULT_BIT_LENGTH,
    DEFAULT_MOVING_RATE,
    WHOLE_TENSOR_AXIS,
    PreconditionNotMetError,
    RoundType,
    as_tensor,
    bin_count,
    check_dtype,
    find_abs_max,
    find_channel_abs_max,
    find_moving_average_abs_max,
    normalize_axis,
)
from linquant.quantize import (
    channel_clip_and_fake_quant,
    channel_dequantize,
    clip_and_fake_quant,
    dequantize_per_tensor,
)

logger = logging.getLogger(__name__)


@dataclass
class QuantizeOutput:
    """
    Result of :func:`quantize_linear`.

    Attributes:
        y: Quantized (or copied) tensor, same shape and dtype as the input.
        out_scale: Scale computed in training mode (per-tensor smoothed
            scalar, or per-channel abs-max vector). ``None`` in inference.
        out_accum: Updated running sum (per-tensor training only).
        out_state: Updated running weight (per-tensor training only).
    """

    y: torch.Tensor
    out_scale: torch.Tensor | None = None
    out_accum: torch.Tensor | None = None
    out_state: torch.Tensor | None = None


def _write(result: torch.Tensor, out: torch.Tensor | None) -> torch.Tensor:
    """Copy ``result`` into a caller-owned buffer when one is given."""
    if out is None:
        return result
    if out.shape != result.shape:
        raise PreconditionNotMetError(
            f"output buffer has shape {tuple(out.shape)}, expected {tuple(result.shape)}"
        )
    out.copy_(result)
    return out


def quantize_linear(
    x: torch.Tensor,
    scale: torch.Tensor | None = None,
    in_accum: torch.Tensor | None = None,
    in_state: torch.Tensor | None = None,
    *,
    bit_length: int = DEFAULT_BIT_LENGTH,
    round_type: RoundType | int = RoundType.TIES_TO_EVEN,
    quant_axis: int = WHOLE_TENSOR_AXIS,
    is_test: bool = False,
    only_observer: bool = False,
    moving_rate: float = DEFAULT_MOVING_RATE,
    out: torch.Tensor | None = None,
) -> QuantizeOutput:
    """
    Quantize ``x`` onto the ``bit_length``-bit symmetric grid.

    Args:
        x: Float16/32/64 input tensor (numpy arrays are accepted).
        scale: Fixed scale used in inference (``is_test=True``). A scalar for
            ``quant_axis=-1``, else one value per channel.
        in_accum: Running weighted sum of past abs-max values. Required for
            per-tensor training; start from ``0``.
        in_state: Running weight matching ``in_accum``; start from ``0``.
        bit_length: Grid width in bits; ``bin_cnt = 2**(bit_length-1) - 1``.
        round_type: Tie-breaking rule.
        quant_axis: Negative (default ``-1``) for one scale, else the channel axis.
        is_test: Apply ``scale`` (True) or estimate it from ``x`` (False).
        only_observer: Update statistics but return ``x`` unchanged.
        moving_rate: Decay of the moving-average tracker.
        out: Optional preallocated buffer for ``y``.

    Returns:
        :class:`QuantizeOutput`. ``out_accum``/``out_state`` are set only for
        per-tensor training; ``out_scale`` for any training call.

    Raises:
        PreconditionNotMetError: Missing scale / moving-average inputs, an
            invalid ``quant_axis`` or a channel scale of the wrong length.
    """
    x = as_tensor(x)
    check_dtype(x, "input")
    bin_cnt = bin_count(bit_length)
    round_type = RoundType(round_type)
    per_tensor = quant_axis < 0

    if is_test and scale is None:
        raise PreconditionNotMetError("inference quantization requires an input scale")

    logger.debug(
        "quantize_linear: is_test=%s per_tensor=%s only_observer=%s bits=%d",
        is_test, per_tensor, only_observer, bit_length,
    )

    if per_tensor:
        if not is_test:
            if in_accum is None or in_state is None:
                raise PreconditionNotMetError(
                    "per-tensor training requires InAccum and InState"
                )
            cur_scale = find_abs_max(x)
            out_state, out_accum, out_scale = find_moving_average_abs_max(
                cur_scale, in_accum, in_state, moving_rate
            )
            if only_observer:
                y = x.clone()
            else:
                y = clip_and_fake_quant(x, out_scale, bin_cnt, round_type)
            return QuantizeOutput(_write(y, out), out_scale, out_accum, out_state)

        if only_observer:
            return QuantizeOutput(_write(x.clone(), out))
        return QuantizeOutput(_write(clip_and_fake_quant(x, scale, bin_cnt, round_type), out))

    axis = normalize_axis(quant_axis, x.ndim)
    if not is_test:
        out_scale = find_channel_abs_max(x, axis)
        if only_observer:
            y = x.clone()
        else:
            y = channel_clip_and_fake_quant(x, out_scale, bin_cnt, round_type, axis)
        return QuantizeOutput(_write(y, out), out_scale)

    if only_observer:
        return QuantizeOutput(_write(x.clone(), out))
    y = channel_clip_and_fake_quant(x, scale, bin_cnt, round_type, axis)
    return QuantizeOutput(_write(y, out))


def dequantize_linear(
    x: torch.Tensor,
    scale: torch.Tensor,
    *,
    bit_length: int = DEFAULT_BIT_LENGTH,
    quant_axis: int = WHOLE_TENSOR_AXIS,
    only_observer: bool = False,
    out: torch.Tensor | None = None,
) -> torch.Tensor:
    """
    Reconstruct floats from grid values: ``x * scale / bin_cnt``.

    The output precision follows ``scale.dtype`` (float16, float32 or
    float64); ``x`` is cast to it first. With ``only_observer`` the cast
    input is returned as is.

    Raises:
        UnsupportedDTypeError: ``scale`` is not a supported float dtype.
        PreconditionNotMetError: Channel scale length does not match
            ``x.shape[quant_axis]``.
    """
    x = as_tensor(x)
    scale = as_tensor(scale)
    dtype = check_dtype(scale, "scale/output in dequantize_linear")
    x_cast = x.to(device=x.device, dtype=dtype, copy=True)

    if only_observer:
        return _write(x_cast, out)

    max_range = bin_count(bit_length)
    if quant_axis < 0:
        y = dequantize_per_tensor(x_cast, scale, max_range)
    else:
        y = channel_dequantize(x_cast, scale, max_range, quant_axis)
    return _write(y, out)
