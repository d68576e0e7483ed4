"""
linquant Neural Network Modules
===============================

``nn.Module`` wrappers that hold quantization statistics as buffers and
switch between the training and inference paths with ``.train()`` /
``.eval()``.
"""

from __future__ import annotations

from linquant.nn.modules import DequantizeLinear, QuantizeLinear

__all__ = [
    "QuantizeLinear",
    "DequantizeLinear",
]
