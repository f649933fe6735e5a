# tinyconv/gradcheck.py
"""
Finite-difference gradient checks against Tensor.backward.
"""
import numpy as np

from tinyconv.device import to_numpy

def rel_error(a, b, eps=1e-12):
    a, b = to_numpy(a), to_numpy(b)
    return float(np.max(np.abs(a - b) / np.maximum(eps, np.abs(a) + np.abs(b))))

def numeric_grad(arr, compute_loss, eps=1e-6):
    """
    Central differences of compute_loss() w.r.t. every element of arr.
    arr is perturbed in place and restored; compute_loss returns a scalar
    Tensor or a number.
    """
    g = np.zeros(arr.shape, dtype=float)

    it = np.nditer(g, flags=["multi_index"])
    while not it.finished:
        idx = it.multi_index
        old = arr[idx]

        arr[idx] = old + eps
        L_pos = _as_float(compute_loss())

        arr[idx] = old - eps
        L_neg = _as_float(compute_loss())

        arr[idx] = old
        g[idx] = (L_pos - L_neg) / (2 * eps)

        it.iternext()

    return g

def _as_float(L):
    return float(to_numpy(L.data if hasattr(L, "data") else L))

def gradcheck(fn, inputs, eps=1e-6, tol=1e-5):
    """
    fn(*inputs) must return a scalar Tensor. Gradients from backward() are
    compared with numeric_grad for every input with requires_grad.
    Returns {index: rel_error}; raises AssertionError above tol.
    """
    for t in inputs:
        t.zero_grad()
    fn(*inputs).backward()
    # an input that requires grad but is unused by fn has a zero gradient
    analytic = {i: np.zeros(t.shape) if t.grad is None else to_numpy(t.grad).copy()
                for i, t in enumerate(inputs) if t.requires_grad}

    errors = {}
    for i, g_auto in analytic.items():
        g_num = numeric_grad(inputs[i].data, lambda: fn(*inputs), eps=eps)
        errors[i] = rel_error(g_auto, g_num)
        if errors[i] > tol:
            raise AssertionError(f"gradcheck failed for input {i}: rel_err {errors[i]:.3e} > {tol:.1e}")
    return errors
