import contextlib

import numpy as np

from tinyconv.conv import ConvParams, conv2d_backward, conv2d_forward
from tinyconv.device import get_xp_from_array, is_array, same_backend, to_device, to_numpy

def _unbroadcast(grad, target_shape):
    xp = get_xp_from_array(grad)
    g = grad

    # If target is scalar, everything was broadcast to something bigger → sum all
    if target_shape == ():
        return xp.asarray(g.sum())

    # If grad has extra leading dims, sum them out
    while g.ndim > len(target_shape):
        g = g.sum(axis=0)

    # Now same ndim; for broadcasted dims (target=1), sum over that axis
    for axis in range(len(target_shape) - 1, -1, -1):
        if target_shape[axis] == 1 and g.shape[axis] != 1:
            g = g.sum(axis=axis, keepdims=True)

    return g

@contextlib.contextmanager
def no_grad():
    prev = Tensor._grad_enabled
    Tensor._grad_enabled = False
    try:
        yield
    finally:
        Tensor._grad_enabled = prev

#tensor holds a value, its gradient, the nodes that created it and how to push gradients back to them
class Tensor:
    _grad_enabled = True

    def __init__(self, data, requires_grad=False):
        if isinstance(data, Tensor):
            data = data.data
        if is_array(data):
            self.data = data
        else:
            self.data = np.array(data, dtype=float)
        self.grad = None
        self.requires_grad = requires_grad
        self._prev = set()
        self._backward = lambda: None
        self._op = ""

    def __repr__(self):
        return f"Tensor(shape={self.shape}, requires_grad={self.requires_grad}, op={self._op!r})"

    @property
    def shape(self):
        return tuple(self.data.shape)

    @property
    def ndim(self):
        return self.data.ndim

    def numpy(self):
        return to_numpy(self.data)

    def _make(self, data, parents, op):
        # builds the output node; no graph is kept under no_grad
        req = Tensor._grad_enabled and any(p.requires_grad for p in parents)
        out = Tensor(data, requires_grad=req)
        if req:
            out._prev = set(parents)
            out._op = op
        return out

    def _init_grad(self):
        if self.grad is None:
            xp = get_xp_from_array(self.data)
            dtype = self.data.dtype if self.data.dtype.kind == "f" else float
            self.grad = xp.zeros_like(self.data, dtype=dtype)

    def _accumulate(self, g):
        self._init_grad()
        self.grad += g

    def backward(self, grad=None, retain_graph=False):
        xp = get_xp_from_array(self.data)
        if grad is None:
            if self.data.size != 1:
                raise ValueError(f"backward() can only be called on a scalar loss, got shape {self.shape}")
            self.grad = xp.ones_like(self.data, dtype=float)
        else:
            grad = grad.data if isinstance(grad, Tensor) else grad
            if tuple(grad.shape) != self.shape:
                raise ValueError(f"grad shape {tuple(grad.shape)} does not match tensor shape {self.shape}")
            self.grad = xp.array(grad, dtype=float, copy=True)

        topo = []
        visited = set()

        def build(v):
            if v not in visited:
                visited.add(v)
                for child in v._prev:
                    build(child)
                topo.append(v)

        build(self)

        # intermediate grads belong to a single sweep; leaves keep accumulating
        for v in topo:
            if v is not self and v._prev:
                v.grad = None

        for v in reversed(topo):
            v._backward()

        if not retain_graph:
            for v in topo:
                v._prev = set()
                v._backward = lambda: None
                v._op = ""

    def zero_grad(self):
        self.grad = None

    def detach(self):
        return Tensor(self.data, requires_grad=False)

    def to(self, device):
        out = Tensor(to_device(self.data, device), requires_grad=self.requires_grad)
        if self.grad is not None:
            out.grad = to_device(self.grad, device)
        return out

    def _coerce(self, other):
        other = other if isinstance(other, Tensor) else Tensor(other)
        if not same_backend(self.data, other.data):
            raise ValueError("cannot mix numpy and cupy tensors in one op")
        return other

    def __add__(self, other):
        other = self._coerce(other)
        out = self._make(self.data + other.data, (self, other), "add")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                self._accumulate(_unbroadcast(out.grad, self.data.shape))
            if other.requires_grad:
                other._accumulate(_unbroadcast(out.grad, other.data.shape))

        out._backward = _backward
        return out

    def __mul__(self, other):
        other = self._coerce(other)
        out = self._make(self.data * other.data, (self, other), "mul")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                self._accumulate(_unbroadcast(out.grad * other.data, self.data.shape))
            if other.requires_grad:
                other._accumulate(_unbroadcast(out.grad * self.data, other.data.shape))

        out._backward = _backward
        return out

    def __neg__(self):
        out = self._make(-self.data, (self,), "neg")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                self._accumulate(-out.grad)

        out._backward = _backward
        return out

    def __sub__(self, other):
        other = self._coerce(other)
        return self + (-other)

    def __rsub__(self, other):
        other = self._coerce(other)
        return other - self

    def __pow__(self, p):
        out = self._make(self.data ** p, (self,), "pow")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                self._accumulate(out.grad * (p * (self.data ** (p - 1))))

        out._backward = _backward
        return out

    __radd__ = __add__
    __rmul__ = __mul__

    def sum(self, axis=None, keepdims=False):
        xp = get_xp_from_array(self.data)
        out = self._make(xp.asarray(self.data.sum(axis=axis, keepdims=keepdims)), (self,), "sum")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                g = out.grad
                if axis is not None and not keepdims:
                    g = xp.expand_dims(g, axis)
                self._accumulate(xp.broadcast_to(g, self.data.shape))

        out._backward = _backward
        return out

    def mean(self):
        return self.sum() * (1.0 / self.data.size)

    def reshape(self, *shape):
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        out = self._make(self.data.reshape(shape), (self,), "reshape")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                self._accumulate(out.grad.reshape(self.data.shape))

        out._backward = _backward
        return out

    def relu(self):
        mask = self.data > 0
        out = self._make(self.data * mask, (self,), "relu")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                self._accumulate(out.grad * mask)

        out._backward = _backward
        return out

    def sigmoid(self):
        xp = get_xp_from_array(self.data)
        s = 1.0 / (1.0 + xp.exp(-self.data))
        out = self._make(s, (self,), "sigmoid")

        def _backward():
            if out.grad is None:
                return
            if self.requires_grad:
                self._accumulate(out.grad * s * (1.0 - s))

        out._backward = _backward
        return out

    def conv2d(self, weight, bias=None, stride=1, padding=0, dilation=1):
        # self: (N, C, H, W) or (C, H, W); weight: (F, C, kH, kW); bias: (F,)
        weight = self._coerce(weight)
        bias = self._coerce(bias) if bias is not None else None
        F, C, kH, kW = weight.data.shape
        params = ConvParams.create(C, F, (kH, kW), stride, padding, dilation)

        y = conv2d_forward(self.data, weight.data, bias.data if bias is not None else None, params)
        parents = (self, weight) if bias is None else (self, weight, bias)
        out = self._make(y, parents, "conv2d")

        def _backward():
            if out.grad is None:
                return
            gw = gb = None
            if weight.requires_grad:
                weight._init_grad()
                gw = weight.grad
            if bias is not None and bias.requires_grad:
                bias._init_grad()
                gb = bias.grad
            # weight/bias grads are accumulated in place by the kernel
            gx = conv2d_backward(self.data, weight.data, out.grad, params,
                                 grad_weight=gw, grad_bias=gb, need_input=self.requires_grad)
            if self.requires_grad:
                self._accumulate(gx)

        out._backward = _backward
        return out
