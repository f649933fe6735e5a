import numpy as np

from tinyconv.conv import ConvParams, check_input, conv2d_backward, conv2d_forward
from tinyconv.device import get_xp_from_array
from tinyconv.tensor import Tensor

class Module:
    training = True

    def parameters(self):
        return [p for _, p in self.named_parameters()]

    def named_parameters(self, prefix=""):
        # trainable tensors only, each shared tensor listed once
        return [(name, t) for name, t in self.named_tensors(prefix) if t.requires_grad]

    def named_tensors(self, prefix=""):
        tensors = []
        seen = set()

        def collect(name, obj):
            if isinstance(obj, Tensor):
                if id(obj) not in seen:
                    seen.add(id(obj))
                    tensors.append((name, obj))
            elif isinstance(obj, Module):
                for k, v in obj.__dict__.items():
                    collect(f"{name}.{k}" if name else k, v)
            elif isinstance(obj, (list, tuple)):
                for i, v in enumerate(obj):
                    collect(f"{name}.{i}" if name else str(i), v)
            elif isinstance(obj, dict):
                for k, v in obj.items():
                    collect(f"{name}.{k}" if name else str(k), v)

        for k, v in self.__dict__.items():
            collect(f"{prefix}.{k}" if prefix else k, v)

        return tensors

    def modules(self):
        out = []
        seen = set()

        def visit(m):
            if id(m) in seen:
                return
            seen.add(id(m))
            out.append(m)
            for v in m.__dict__.values():
                if isinstance(v, Module):
                    visit(v)
                elif isinstance(v, (list, tuple)):
                    for c in v:
                        if isinstance(c, Module):
                            visit(c)

        visit(self)
        return out

    def state_dict(self):
        # name -> copy of every tensor, frozen ones included
        return {name: t.data.copy() for name, t in self.named_tensors()}

    def load_state_dict(self, sd, strict=True):
        own = dict(self.named_tensors())
        if strict:
            missing = sorted(set(own) - set(sd))
            unexpected = sorted(set(sd) - set(own))
            if missing or unexpected:
                raise ValueError(f"state_dict mismatch: missing={missing} unexpected={unexpected}")

        for name, p in own.items():
            if name not in sd:
                continue
            arr = sd[name]
            if tuple(arr.shape) != p.shape:
                raise ValueError(f"shape mismatch for {name}: got {tuple(arr.shape)}, expected {p.shape}")
            xp = get_xp_from_array(p.data)
            p.data[...] = xp.asarray(arr)

    def zero_grad(self):
        for p in self.parameters():
            p.zero_grad()

    def train(self):
        for m in self.modules():
            m.training = True
        return self

    def eval(self):
        for m in self.modules():
            m.training = False
        return self

    def to(self, device):
        for m in self.modules():
            for k, v in list(m.__dict__.items()):
                if isinstance(v, Tensor):
                    setattr(m, k, v.to(device))
        return self

class Sequential(Module):
    def __init__(self, *layers):
        self.layers = list(layers)

    def add(self, layer):
        self.layers.append(layer)
        return self

    def __call__(self, x: Tensor) -> Tensor:
        for layer in self.layers:
            x = layer(x)
        return x

class Sigmoid(Module):
    def __call__(self, x: Tensor) -> Tensor:
        return x.sigmoid()

class DilatedConv2d(Module):
    """
    2D convolution with dilation, stride and zero padding.

    weight is (out_channels, in_channels, kH, kW) and bias is (out_channels,),
    both drawn from U(-stdv, stdv) with stdv = 1/sqrt(kH*kW*in_channels) using
    ``rng`` (a numpy RandomState or Generator). Gradients live in ``W.grad`` and
    ``b.grad`` and accumulate across backward calls until ``zero_grad``.

    Calling the layer on a Tensor records an autograd node. The ndarray methods
    (forward / update_grad_input / acc_grad_parameters / backward) run the same
    kernel without a graph, for callers that drive the passes explicitly.
    """

    def __init__(self, in_channels, out_channels, kernel_size, stride=1, padding=0, dilation=1,
                 bias=True, w_regularizer=None, b_regularizer=None, rng=None, device="cpu"):
        self.params = ConvParams.create(in_channels, out_channels, kernel_size, stride, padding, dilation)
        self.in_channels = self.params.in_channels
        self.out_channels = self.params.out_channels
        self.kernel_size = self.params.kernel
        self.stride = self.params.stride
        self.padding = self.params.padding
        self.dilation = self.params.dilation

        self.w_regularizer = w_regularizer
        self.b_regularizer = b_regularizer

        if rng is None:
            rng = np.random.RandomState()
        kH, kW = self.kernel_size
        stdv = 1.0 / np.sqrt(kH * kW * self.in_channels)

        self.W = Tensor(rng.uniform(-stdv, stdv, size=self.params.weight_shape), requires_grad=True)
        self.use_bias = bias
        if bias:
            self.b = Tensor(rng.uniform(-stdv, stdv, size=(self.out_channels,)), requires_grad=True)
        else:
            self.b = None

        if device != "cpu":
            self.to(device)

    def __repr__(self):
        return (f"DilatedConv2d({self.in_channels}, {self.out_channels}, kernel_size={self.kernel_size}, "
                f"stride={self.stride}, padding={self.padding}, dilation={self.dilation})")

    def output_shape(self, input_shape):
        out_h, out_w = check_input(input_shape, self.params)
        return tuple(input_shape[:-3]) + (self.out_channels, out_h, out_w)

    def forward(self, x):
        return conv2d_forward(x, self.W.data, self.b.data if self.use_bias else None, self.params)

    def update_grad_input(self, x, grad_output):
        return conv2d_backward(x, self.W.data, grad_output, self.params)

    def acc_grad_parameters(self, x, grad_output, scale=1.0):
        self._backward_into(x, grad_output, scale, need_input=False)

    def backward(self, x, grad_output, scale=1.0):
        """
        Input gradient plus in-place accumulation of weight/bias gradients
        (and regularizer terms). Returns grad_input.
        """
        return self._backward_into(x, grad_output, scale)

    def _backward_into(self, x, grad_output, scale, need_input=True):
        # frozen parameters get neither a gradient nor a regularizer term
        gw = gb = None
        if self.W.requires_grad:
            self.W._init_grad()
            gw = self.W.grad
        if self.use_bias and self.b.requires_grad:
            self.b._init_grad()
            gb = self.b.grad

        grad_input = conv2d_backward(x, self.W.data, grad_output, self.params,
                                     grad_weight=gw, grad_bias=gb, scale=scale, need_input=need_input)

        if gw is not None and self.w_regularizer is not None:
            self.w_regularizer.accumulate(self.W.data, gw, scale)
        if gb is not None and self.b_regularizer is not None:
            self.b_regularizer.accumulate(self.b.data, gb, scale)
        return grad_input

    def zero_grad(self):
        # explicit zero buffers, backward adds into them
        xp = get_xp_from_array(self.W.data)
        if self.W.requires_grad:
            self.W.grad = xp.zeros_like(self.W.data)
        if self.use_bias and self.b.requires_grad:
            self.b.grad = xp.zeros_like(self.b.data)

    def __call__(self, x: Tensor) -> Tensor:
        out_data = self.forward(x.data)

        should_require_grad = Tensor._grad_enabled and (
            x.requires_grad or self.W.requires_grad or (self.use_bias and self.b.requires_grad))
        out = Tensor(out_data, requires_grad=should_require_grad)

        if out.requires_grad:
            out._prev = {x, self.W}
            if self.use_bias:
                out._prev.add(self.b)
            out._op = "dilated_conv2d"

            def _backward():
                if out.grad is None:
                    return
                grad_input = self._backward_into(x.data, out.grad, 1.0, need_input=x.requires_grad)
                if x.requires_grad:
                    x._accumulate(grad_input)

            out._backward = _backward

        return out

    def to(self, device):
        self.W = self.W.to(device)
        if self.use_bias:
            self.b = self.b.to(device)
        return self
