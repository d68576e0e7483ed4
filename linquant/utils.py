"""
Utility Functions for linquant
==============================

Diagnostics for judging how much precision a linear quantization setting
costs on a given tensor.
"""

from __future__ import annotations

import math

import torch

from linquant.core import (
    DEFAULT_BIT_LENGTH,
    WHOLE_TENSOR_AXIS,
    RoundType,
    as_tensor,
    bin_count,
    find_abs_max,
    find_channel_abs_max,
)
from linquant.quantize import fake_quant_dequant


def quantization_step(scale: torch.Tensor | float, bit_length: int = DEFAULT_BIT_LENGTH) -> torch.Tensor:
    """Spacing between adjacent grid points in the float domain, ``s / bin_cnt``."""
    return as_tensor(scale) / bin_count(bit_length)


def quantization_error(
    original: torch.Tensor,
    scale: torch.Tensor | None = None,
    bit_length: int = DEFAULT_BIT_LENGTH,
    round_type: RoundType | int = RoundType.TIES_TO_EVEN,
    quant_axis: int = WHOLE_TENSOR_AXIS,
) -> dict[str, float]:
    """
    Compute error statistics of a quantize → dequantize round trip.

    If ``scale`` is omitted the abs-max of ``original`` (per tensor or per
    channel) is used, so nothing is clipped.

    Returns a dict with keys: ``mse``, ``rmse``, ``max_abs_error``,
    ``mean_abs_error``, ``signal_to_noise_db``.
    """
    original = as_tensor(original)
    if scale is None:
        if quant_axis < 0:
            scale = find_abs_max(original)
        else:
            scale = find_channel_abs_max(original, quant_axis)

    reconstructed = fake_quant_dequant(original, scale, bit_length, round_type, quant_axis)

    error = (original.double() - reconstructed.double())
    mse = error.pow(2).mean().item()
    rmse = math.sqrt(mse)
    max_abs = error.abs().max().item()
    mean_abs = error.abs().mean().item()

    signal_power = original.double().pow(2).mean().item()
    snr_db = 10 * math.log10(max(signal_power, 1e-45) / max(mse, 1e-45))

    return {
        "mse": mse,
        "rmse": rmse,
        "max_abs_error": max_abs,
        "mean_abs_error": mean_abs,
        "signal_to_noise_db": snr_db,
    }
