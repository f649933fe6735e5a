# tests/test_gpu_smoke_conv2d.py
import numpy as np

try:
    import cupy as cp
except ImportError:
    cp = None

from tinyconv.tensor import Tensor
from tinyconv.nn import DilatedConv2d


def _skip_if_no_cupy():
    if cp is None:
        print("[SKIP] cupy not installed")
        return True
    return False


def test_dilated_conv_forward_backward_backend():
    if _skip_if_no_cupy():
        return

    N, C, H, W = 2, 3, 8, 8
    F = 4

    layer_cpu = DilatedConv2d(C, F, 3, padding=2, dilation=2, rng=np.random.RandomState(0))
    layer = DilatedConv2d(C, F, 3, padding=2, dilation=2, rng=np.random.RandomState(0), device="cuda")

    x_np = np.random.RandomState(1).randn(N, C, H, W)
    x = Tensor(cp.asarray(x_np), requires_grad=True)

    y = layer(x)
    assert isinstance(y.data, cp.ndarray), "conv output must be cupy"
    assert y.shape == (N, F, H, W), f"unexpected output shape {y.shape}"

    y.sum().backward()

    assert isinstance(x.grad, cp.ndarray), "x.grad must be cupy"
    assert isinstance(layer.W.grad, cp.ndarray), "W.grad must be cupy"
    assert isinstance(layer.b.grad, cp.ndarray), "b.grad must be cupy"

    y_cpu = layer_cpu.forward(x_np)
    assert np.allclose(cp.asnumpy(y.data), y_cpu)


def main():
    if _skip_if_no_cupy():
        return

    test_dilated_conv_forward_backward_backend()
    print("[OK] GPU smoke: dilated conv2d")


if __name__ == "__main__":
    main()
