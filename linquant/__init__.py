"""
linquant: Linear Tensor Quantization for PyTorch
================================================

Symmetric, abs-max scaled fake quantization with per-tensor or per-channel
scales.

Key features:
  - Integer-grid quantization kept in float16/32/64 storage
  - Explicit rounding policy (ties to even, ties away from zero)
  - Bias-corrected moving-average scale tracking for training
  - Precision-dispatched dequantization
  - Optional fused Triton kernels on CUDA

Quick start::

    import torch
    from linquant import quantize_linear, dequantize_linear

    x = torch.randn(128, 256)
    accum, state = torch.zeros(1), torch.zeros(1)

    # Training: estimate the scale, quantize with it
    res = quantize_linear(x, in_accum=accum, in_state=state)
    x_hat = dequantize_linear(res.y, res.out_scale)

    # Inference: per-channel, fixed scale
    scale = x.abs().amax(dim=1)
    q = quantize_linear(x, scale, quant_axis=0, is_test=True).y
"""

from linquant.core import (
    MovingAverageState,
    PreconditionNotMetError,
    RoundType,
    UnsupportedDTypeError,
    bin_count,
    find_abs_max,
    find_channel_abs_max,
    find_moving_average_abs_max,
)
from linquant.ops import QuantizeOutput, dequantize_linear, quantize_linear
from linquant.quantize import (
    channel_clip_and_fake_quant,
    channel_dequantize,
    clip_and_fake_quant,
    dequantize_per_tensor,
    fake_quant_dequant,
)
from linquant.utils import quantization_error

__version__ = "0.1.0"
__all__ = [
    # Types
    "RoundType",
    "MovingAverageState",
    "QuantizeOutput",
    # Errors
    "PreconditionNotMetError",
    "UnsupportedDTypeError",
    # Reducers / tracker
    "bin_count",
    "find_abs_max",
    "find_channel_abs_max",
    "find_moving_average_abs_max",
    # Transforms
    "clip_and_fake_quant",
    "channel_clip_and_fake_quant",
    "dequantize_per_tensor",
    "channel_dequantize",
    "fake_quant_dequant",
    # Orchestrators
    "quantize_linear",
    "dequantize_linear",
    # Diagnostics
    "quantization_error",
]
