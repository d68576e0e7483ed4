"""
Benchmark: Quantize / Dequantize Throughput
===========================================

Measures elementwise throughput of the linear quantize and dequantize
transforms, per tensor and per channel, on the eager path and (when
available) the Triton path.

Run: ``python -m benchmarks.benchmark_speed``
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from linquant.backend import set_backend
from linquant.ops import dequantize_linear, quantize_linear
from linquant.triton_kernels import has_triton


def time_function(fn, *args, warmup: int = 5, runs: int = 50, **kwargs) -> dict[str, float]:
    """Time a function with warmup and multiple runs."""
    for _ in range(warmup):
        fn(*args, **kwargs)

    if torch.cuda.is_available():
        torch.cuda.synchronize()

    times = []
    for _ in range(runs):
        start = time.perf_counter()
        fn(*args, **kwargs)
        if torch.cuda.is_available():
            torch.cuda.synchronize()
        times.append(time.perf_counter() - start)

    mean = sum(times) / len(times)
    return {
        "mean_ms": mean * 1000,
        "min_ms": min(times) * 1000,
        "max_ms": max(times) * 1000,
        "std_ms": (sum((t - mean) ** 2 for t in times) / len(times)) ** 0.5 * 1000,
    }


def _report(label: str, t: dict[str, float], num_elements: int) -> None:
    throughput = num_elements / (t["mean_ms"] / 1000) / 1e9
    print(f"  {label:<28} {t['mean_ms']:>8.3f} ms  ({throughput:.2f} Gelements/s)")


def benchmark_backend(backend: str) -> None:
    """Benchmark every orchestrator path on one backend."""
    print("=" * 80)
    print(f"LINEAR QUANTIZATION THROUGHPUT ({backend})")
    print("=" * 80)

    set_backend(backend)
    device = "cuda" if torch.cuda.is_available() else "cpu"
    print(f"Device: {device}")

    sizes = [
        (256, 256),
        (1024, 1024),
        (4096, 4096),
    ]

    for H, W in sizes:
        tensor = torch.randn(H, W, device=device)
        num_elements = H * W
        accum = torch.zeros(1, device=device)
        state = torch.zeros(1, device=device)
        scale = tensor.abs().max().reshape(1)
        channel_scale = tensor.abs().amax(dim=1)

        print(f"\nTensor size: {H}×{W} = {num_elements:,} elements")

        t = time_function(quantize_linear, tensor, None, accum, state)
        _report("Quantize (train, tensor)", t, num_elements)

        t = time_function(quantize_linear, tensor, scale, is_test=True)
        _report("Quantize (infer, tensor)", t, num_elements)

        t = time_function(quantize_linear, tensor, quant_axis=0)
        _report("Quantize (train, channel)", t, num_elements)

        t = time_function(quantize_linear, tensor, channel_scale, quant_axis=0, is_test=True)
        _report("Quantize (infer, channel)", t, num_elements)

        q = quantize_linear(tensor, scale, is_test=True).y
        t = time_function(dequantize_linear, q, scale)
        _report("Dequantize (tensor)", t, num_elements)

        t = time_function(dequantize_linear, q, channel_scale, quant_axis=0)
        _report("Dequantize (channel)", t, num_elements)


if __name__ == "__main__":
    benchmark_backend("eager")
    if has_triton():
        print()
        benchmark_backend("triton")
    else:
        print("\nTriton or CUDA not available, skipping Triton benchmark")
