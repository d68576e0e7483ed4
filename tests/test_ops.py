"""
Tests for the Quantize / Dequantize Orchestrators
=================================================

Covers:
  - All eight quantize dispatch paths (is_test × per-tensor/channel × observer)
  - Moving-average bookkeeping through the orchestrator
  - Per-channel training without smoothing
  - Precondition errors
  - Dequantize precision dispatch and observer pass-through
  - Caller-owned output buffers
"""

from __future__ import annotations

import numpy as np
import pytest
import torch

from linquant.core import (
    PreconditionNotMetError,
    RoundType,
    UnsupportedDTypeError,
    bin_count,
    find_channel_abs_max,
)
from linquant.ops import QuantizeOutput, dequantize_linear, quantize_linear
from linquant.quantize import channel_clip_and_fake_quant, clip_and_fake_quant


@pytest.fixture
def moving_pair() -> tuple[torch.Tensor, torch.Tensor]:
    return torch.zeros(1), torch.zeros(1)


# ===================================================================
# Per-tensor training
# ===================================================================


class TestTrainingPerTensor:
    def test_first_step(self, moving_pair) -> None:
        accum, state = moving_pair
        x = torch.tensor([[1.0, -5.0], [2.0, 3.0]])
        res = quantize_linear(x, None, accum, state, moving_rate=0.9)
        assert isinstance(res, QuantizeOutput)
        assert res.out_scale.item() == pytest.approx(5.0)
        assert res.out_accum.item() == pytest.approx(5.0)
        assert res.out_state.item() == pytest.approx(1.0)
        assert torch.equal(res.y, clip_and_fake_quant(x, torch.tensor(5.0), 127))

    def test_second_step_smooths(self, moving_pair) -> None:
        accum, state = moving_pair
        first = quantize_linear(torch.tensor([5.0, -1.0]), None, accum, state, moving_rate=0.9)
        second = quantize_linear(
            torch.tensor([3.0, -1.0]),
            None,
            first.out_accum,
            first.out_state,
            moving_rate=0.9,
        )
        assert second.out_accum.item() == pytest.approx(7.5, rel=1e-6)
        assert second.out_state.item() == pytest.approx(1.9, rel=1e-6)
        assert second.out_scale.item() == pytest.approx(3.947368, rel=1e-5)

    def test_observer_only_passes_values_and_updates_state(self, moving_pair) -> None:
        accum, state = moving_pair
        x = torch.randn(8, 8)
        res = quantize_linear(x, None, accum, state, only_observer=True)
        assert torch.equal(res.y, x)
        assert res.y.data_ptr() != x.data_ptr()
        assert res.out_state.item() == pytest.approx(1.0)
        assert res.out_scale.item() == pytest.approx(x.abs().max().item())

    def test_missing_moving_pair(self) -> None:
        with pytest.raises(PreconditionNotMetError):
            quantize_linear(torch.randn(4), None, None, None)

    def test_zero_input(self, moving_pair) -> None:
        accum, state = moving_pair
        res = quantize_linear(torch.zeros(4, 4), None, accum, state)
        assert res.out_scale.item() == 0.0
        assert torch.equal(res.y, torch.zeros(4, 4))
        y = dequantize_linear(res.y, res.out_scale)
        assert torch.isfinite(y).all()

    def test_half_precision(self) -> None:
        x = torch.randn(4, 4).half()
        res = quantize_linear(x, None, torch.zeros(1), torch.zeros(1))
        assert res.y.dtype == torch.float16
        assert torch.isfinite(res.y).all()

    def test_round_trip(self, moving_pair) -> None:
        accum, state = moving_pair
        x = torch.randn(32, 32, dtype=torch.float64)
        res = quantize_linear(x, None, accum.double(), state.double())
        y = dequantize_linear(res.y, res.out_scale)
        s = res.out_scale.item()
        assert (y - x).abs().max().item() <= s / 127 + 1e-12


# ===================================================================
# Per-tensor inference
# ===================================================================


class TestInferencePerTensor:
    def test_uses_given_scale(self) -> None:
        x = torch.randn(16, 16)
        scale = torch.tensor([0.5])
        res = quantize_linear(x, scale, is_test=True)
        assert torch.equal(res.y, clip_and_fake_quant(x, scale, 127))
        assert res.out_scale is None
        assert res.out_accum is None
        assert res.out_state is None

    def test_observer_only(self) -> None:
        x = torch.randn(16)
        res = quantize_linear(x, torch.tensor([0.5]), is_test=True, only_observer=True)
        assert torch.equal(res.y, x)

    def test_missing_scale(self) -> None:
        with pytest.raises(PreconditionNotMetError):
            quantize_linear(torch.randn(4), None, is_test=True)

    def test_round_type_forwarded(self) -> None:
        x = torch.tensor([0.5, -0.5])
        res = quantize_linear(
            x, torch.tensor([1.0]), is_test=True, bit_length=2,
            round_type=RoundType.TIES_AWAY_FROM_ZERO,
        )
        assert torch.equal(res.y, torch.tensor([1.0, -1.0]))

    def test_numpy_input(self) -> None:
        arr = np.random.randn(4, 4).astype(np.float32)
        res = quantize_linear(arr, torch.tensor([1.0]), is_test=True)
        assert res.y.shape == (4, 4)


# ===================================================================
# Per-channel paths
# ===================================================================


class TestPerChannel:
    def test_training_uses_raw_abs_max(self) -> None:
        x = torch.randn(4, 3, 5)
        res = quantize_linear(x, quant_axis=1)
        expected_scale = find_channel_abs_max(x, 1)
        torch.testing.assert_close(res.out_scale, expected_scale)
        assert res.out_accum is None and res.out_state is None
        assert torch.equal(
            res.y, channel_clip_and_fake_quant(x, expected_scale, 127, quant_axis=1)
        )

    def test_training_does_not_smooth(self) -> None:
        big = torch.full((2, 3), 10.0)
        small = torch.full((2, 3), 1.0)
        quantize_linear(big, quant_axis=0)
        res = quantize_linear(small, quant_axis=0)
        torch.testing.assert_close(res.out_scale, torch.ones(2))

    def test_training_observer_only(self) -> None:
        x = torch.randn(4, 3)
        res = quantize_linear(x, quant_axis=1, only_observer=True)
        assert torch.equal(res.y, x)
        assert res.out_scale.shape == (3,)

    def test_inference(self) -> None:
        x = torch.randn(4, 3, 5)
        scales = torch.tensor([0.5, 1.0, 1.5])
        res = quantize_linear(x, scales, quant_axis=1, is_test=True)
        assert torch.equal(res.y, channel_clip_and_fake_quant(x, scales, 127, quant_axis=1))
        assert res.out_scale is None

    def test_inference_observer_only(self) -> None:
        x = torch.randn(4, 3, 5)
        res = quantize_linear(x, torch.ones(3), quant_axis=1, is_test=True, only_observer=True)
        assert torch.equal(res.y, x)

    @pytest.mark.parametrize("length", [1, 2, 4, 5])
    def test_inference_rejects_wrong_scale_length(self, length: int) -> None:
        x = torch.randn(4, 3, 5)
        with pytest.raises(PreconditionNotMetError):
            quantize_linear(x, torch.ones(length), quant_axis=1, is_test=True)

    def test_axis_out_of_range(self) -> None:
        with pytest.raises(PreconditionNotMetError):
            quantize_linear(torch.randn(4, 3), quant_axis=2)

    def test_zero_channel_is_finite(self) -> None:
        x = torch.randn(3, 8)
        x[2] = 0.0
        res = quantize_linear(x, quant_axis=0)
        assert torch.isfinite(res.y).all()
        y = dequantize_linear(res.y, res.out_scale, quant_axis=0)
        assert torch.isfinite(y).all()
        assert torch.equal(y[2], torch.zeros(8))


# ===================================================================
# Dequantize orchestrator
# ===================================================================


class TestDequantizeLinear:
    @pytest.mark.parametrize("dtype", [torch.float16, torch.float32, torch.float64])
    def test_output_follows_scale_dtype(self, dtype: torch.dtype) -> None:
        x = torch.tensor([127.0, -64.0, 0.0])
        y = dequantize_linear(x, torch.tensor([1.0], dtype=dtype))
        assert y.dtype == dtype
        torch.testing.assert_close(
            y, torch.tensor([1.0, -64.0 / 127.0, 0.0], dtype=dtype), rtol=1e-3, atol=1e-3
        )

    def test_unsupported_scale_dtype(self) -> None:
        with pytest.raises(UnsupportedDTypeError, match="int32"):
            dequantize_linear(torch.randn(4), torch.tensor([1], dtype=torch.int32))

    def test_observer_only_casts(self) -> None:
        x = torch.randn(8)
        y = dequantize_linear(x, torch.tensor([2.0], dtype=torch.float64), only_observer=True)
        assert y.dtype == torch.float64
        assert torch.equal(y, x.double())

    def test_observer_only_returns_copy(self) -> None:
        x = torch.randn(8)
        y = dequantize_linear(x, torch.tensor([2.0]), only_observer=True)
        assert torch.equal(y, x)
        assert y.data_ptr() != x.data_ptr()

    def test_identity_with_matching_scale(self) -> None:
        """scale == bin_cnt makes dequantization the identity."""
        x = torch.randn(32, dtype=torch.float64)
        scale = torch.tensor([float(bin_count(16))], dtype=torch.float64)
        torch.testing.assert_close(dequantize_linear(x, scale, bit_length=16), x)

    def test_per_channel(self) -> None:
        x = torch.full((4, 3, 5), 127.0)
        scales = torch.tensor([1.0, 2.0, 3.0])
        y = dequantize_linear(x, scales, quant_axis=1)
        torch.testing.assert_close(y[:, 2, :], torch.full((4, 5), 3.0))

    def test_per_channel_mismatch(self) -> None:
        with pytest.raises(PreconditionNotMetError, match="2 != 3"):
            dequantize_linear(torch.zeros(4, 3, 5), torch.ones(2), quant_axis=1)


# ===================================================================
# Output buffers
# ===================================================================


class TestOutputBuffer:
    def test_quantize_writes_into_buffer(self) -> None:
        x = torch.randn(4, 4)
        out = torch.empty_like(x)
        res = quantize_linear(x, torch.tensor([1.0]), is_test=True, out=out)
        assert res.y is out
        assert torch.equal(out, clip_and_fake_quant(x, torch.tensor(1.0), 127))

    def test_dequantize_writes_into_buffer(self) -> None:
        out = torch.empty(3)
        y = dequantize_linear(torch.tensor([127.0, 0.0, -127.0]), torch.tensor([1.0]), out=out)
        assert y is out
        torch.testing.assert_close(out, torch.tensor([1.0, 0.0, -1.0]))

    def test_wrong_buffer_shape(self) -> None:
        with pytest.raises(PreconditionNotMetError):
            quantize_linear(torch.randn(4), torch.tensor([1.0]), is_test=True, out=torch.empty(5))
