# examples/dilated_conv_sanity.py
import numpy as np
from tinyconv.tensor import Tensor, no_grad
from tinyconv.nn import DilatedConv2d
from tinyconv.gradcheck import gradcheck

CASES = [
    # (input shape, out planes, kernel, stride, padding, dilation)
    ((3, 3, 6, 6), 6, 3, 1, 2, 1),
    ((3, 6, 6), 6, 3, 2, 1, 1),
    ((2, 2, 9, 9), 4, 3, 1, 2, 2),
    ((1, 1, 12, 10), 2, (3, 2), (2, 1), (1, 0), (3, 2)),
]

def main():
    for shape, F, k, s, p, d in CASES:
        rng = np.random.RandomState(100)
        layer = DilatedConv2d(shape[-3], F, k, stride=s, padding=p, dilation=d, rng=rng)
        with no_grad():
            y = layer(Tensor(rng.rand(*shape)))
        print(f"{layer}  in {shape} -> out {y.shape}")

    # finite-difference check on a small dilated case
    rng = np.random.RandomState(0)
    x = Tensor(rng.randn(1, 2, 7, 7), requires_grad=True)
    w = Tensor(rng.randn(3, 2, 3, 3), requires_grad=True)
    b = Tensor(rng.randn(3), requires_grad=True)
    R = Tensor(rng.randn(1, 3, 4, 4))

    errs = gradcheck(lambda x, w, b: (x.conv2d(w, b, stride=2, padding=2, dilation=2) * R).sum(),
                     [x, w, b], eps=1e-5, tol=1e-4)
    print("rel_err x:", errs[0])
    print("rel_err w:", errs[1])
    print("rel_err b:", errs[2])
    print("[OK] dilated conv2d gradcheck passed")

if __name__ == "__main__":
    main()
