"""
linquant Module Wrappers
========================

``nn.Module`` front-ends over :func:`linquant.ops.quantize_linear` and
:func:`linquant.ops.dequantize_linear`. The modules own the persistent
buffers (scale and the moving-average pair) that the functional API expects
its caller to hold, and pick the training / inference path from
``self.training``.

Usage::

    quant = QuantizeLinear(bit_length=8)
    dequant = DequantizeLinear(bit_length=8)

    quant.train()
    q = quant(x)                  # updates quant.scale from x
    y = dequant(q, quant.scale)   # back to the float domain

    quant.eval()
    q = quant(x)                  # applies the frozen scale
"""

from __future__ import annotations

import torch
import torch.nn as nn

from linquant.core import (
    DEFAULT_BIT_LENGTH,
    DEFAULT_MOVING_RATE,
    WHOLE_TENSOR_AXIS,
    RoundType,
    as_tensor,
    check_channel_scale,
    normalize_axis,
)
from linquant.ops import dequantize_linear, quantize_linear


# ---------------------------------------------------------------------------
# QuantizeLinear
# ---------------------------------------------------------------------------


class QuantizeLinear(nn.Module):
    """
    Linear fake-quantizer with its own scale statistics.

    In training mode the scale is re-estimated on every call: smoothed by the
    moving-average tracker for a negative ``quant_axis``, or the raw channel abs-max
    otherwise. In eval mode the stored ``scale`` buffer is applied.

    Args:
        channels: Size of ``quant_axis``; required when ``quant_axis >= 0``.
        quant_axis: Negative for a single scale, else the channel axis.
        bit_length: Grid width in bits. Default: 8.
        round_type: Tie-breaking rule. Default: ties to even.
        moving_rate: Decay of the moving-average tracker. Default: 0.9.
        only_observer: Collect statistics without altering the input.
    """

    def __init__(
        self,
        channels: int | None = None,
        quant_axis: int = WHOLE_TENSOR_AXIS,
        bit_length: int = DEFAULT_BIT_LENGTH,
        round_type: RoundType | int = RoundType.TIES_TO_EVEN,
        moving_rate: float = DEFAULT_MOVING_RATE,
        only_observer: bool = False,
    ) -> None:
        super().__init__()
        if quant_axis >= 0 and channels is None:
            raise ValueError("channels is required for per-channel quantization")
        self.channels = channels
        self.quant_axis = quant_axis
        self.bit_length = bit_length
        self.round_type = RoundType(round_type)
        self.moving_rate = moving_rate
        self.only_observer = only_observer

        num_scales = 1 if quant_axis < 0 else channels
        self.register_buffer("scale", torch.zeros(num_scales))
        self.register_buffer("accum", torch.zeros(1))
        self.register_buffer("state", torch.zeros(1))

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        input = as_tensor(input)
        if self.quant_axis >= 0:
            axis = normalize_axis(self.quant_axis, input.ndim)
            check_channel_scale(self.scale, input.shape, axis)
        result = quantize_linear(
            input,
            self.scale,
            self.accum,
            self.state,
            bit_length=self.bit_length,
            round_type=self.round_type,
            quant_axis=self.quant_axis,
            is_test=not self.training,
            only_observer=self.only_observer,
            moving_rate=self.moving_rate,
        )
        if self.training:
            self._store(result.out_scale, result.out_accum, result.out_state)
        return result.y

    @torch.no_grad()
    def _store(
        self,
        out_scale: torch.Tensor,
        out_accum: torch.Tensor | None,
        out_state: torch.Tensor | None,
    ) -> None:
        self.scale.copy_(out_scale.reshape(self.scale.shape))
        if out_accum is not None:
            self.accum.copy_(out_accum.reshape(1))
            self.state.copy_(out_state.reshape(1))

    def reset_statistics(self) -> None:
        """Zero the scale and the moving-average pair."""
        self.scale.zero_()
        self.accum.zero_()
        self.state.zero_()

    def extra_repr(self) -> str:
        return (
            f"channels={self.channels}, quant_axis={self.quant_axis}, "
            f"bit_length={self.bit_length}, round_type={self.round_type.name}, "
            f"moving_rate={self.moving_rate}, only_observer={self.only_observer}"
        )


# ---------------------------------------------------------------------------
# DequantizeLinear
# ---------------------------------------------------------------------------


class DequantizeLinear(nn.Module):
    """
    Maps grid values back to floats using a caller-supplied or stored scale.

    The output dtype follows the scale's dtype.

    Args:
        channels: Size of ``quant_axis`` for the stored scale buffer.
        quant_axis: Negative for a single scale, else the channel axis.
        bit_length: Grid width in bits. Default: 8.
        only_observer: Return the (cast) input unchanged.
    """

    def __init__(
        self,
        channels: int | None = None,
        quant_axis: int = WHOLE_TENSOR_AXIS,
        bit_length: int = DEFAULT_BIT_LENGTH,
        only_observer: bool = False,
    ) -> None:
        super().__init__()
        if quant_axis >= 0 and channels is None:
            raise ValueError("channels is required for per-channel dequantization")
        self.channels = channels
        self.quant_axis = quant_axis
        self.bit_length = bit_length
        self.only_observer = only_observer

        num_scales = 1 if quant_axis < 0 else channels
        self.register_buffer("scale", torch.ones(num_scales))

    def forward(self, input: torch.Tensor, scale: torch.Tensor | None = None) -> torch.Tensor:
        return dequantize_linear(
            input,
            self.scale if scale is None else scale,
            bit_length=self.bit_length,
            quant_axis=self.quant_axis,
            only_observer=self.only_observer,
        )

    def extra_repr(self) -> str:
        return (
            f"channels={self.channels}, quant_axis={self.quant_axis}, "
            f"bit_length={self.bit_length}, only_observer={self.only_observer}"
        )
