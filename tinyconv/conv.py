# tinyconv/conv.py
"""
Dilated 2D convolution kernel (forward + backward) on raw arrays.

Everything here works on numpy or cupy arrays, the array module is picked
from the input. Layout is NCHW, weights are (out_channels, in_channels, kH, kW).
A rank 3 input (C, H, W) is treated as a batch of one and the result keeps
rank 3.
"""
import operator
from typing import NamedTuple, Tuple, Union

from tinyconv.device import get_xp_from_array

IntPair = Union[int, Tuple[int, int]]


def _int(v, name="value"):
    # accepts python and numpy integers, rejects floats and bools
    if isinstance(v, bool):
        raise ValueError(f"{name} must be an integer, got {v!r}")
    try:
        return operator.index(v)
    except TypeError:
        raise ValueError(f"{name} must be an integer, got {v!r}") from None


def _pair(v, name="value"):
    if isinstance(v, (tuple, list)):
        if len(v) != 2:
            raise ValueError(f"{name} must be an int or a pair, got {tuple(v)}")
        return (_int(v[0], name), _int(v[1], name))
    v = _int(v, name)
    return (v, v)


def conv_output_size(size: int, kernel: int, stride: int = 1, padding: int = 0, dilation: int = 1) -> int:
    # floor((in + 2*pad - dilation*(k-1) - 1) / stride) + 1
    return (size + 2 * padding - dilation * (kernel - 1) - 1) // stride + 1


class ConvParams(NamedTuple):
    in_channels: int
    out_channels: int
    kernel: Tuple[int, int]
    stride: Tuple[int, int] = (1, 1)
    padding: Tuple[int, int] = (0, 0)
    dilation: Tuple[int, int] = (1, 1)

    @classmethod
    def create(cls, in_channels, out_channels, kernel_size: IntPair,
               stride: IntPair = 1, padding: IntPair = 0, dilation: IntPair = 1):
        """
        Build and validate a parameter set. Pairs are (height, width).
        """
        p = cls(_int(in_channels, "in_channels"), _int(out_channels, "out_channels"),
                _pair(kernel_size, "kernel_size"), _pair(stride, "stride"),
                _pair(padding, "padding"), _pair(dilation, "dilation"))

        if p.in_channels < 1 or p.out_channels < 1:
            raise ValueError(f"channel counts must be positive, got in={p.in_channels} out={p.out_channels}")
        if min(p.kernel) < 1:
            raise ValueError(f"kernel dimensions must be positive, got {p.kernel}")
        if min(p.stride) < 1:
            raise ValueError(f"stride values must be positive, got {p.stride}")
        if min(p.dilation) < 1:
            raise ValueError(f"dilation values must be positive, got {p.dilation}")
        if min(p.padding) < 0:
            raise ValueError(f"padding values must be non-negative, got {p.padding}")
        return p

    @property
    def weight_shape(self):
        return (self.out_channels, self.in_channels) + self.kernel

    def output_shape(self, height: int, width: int) -> Tuple[int, int]:
        (kH, kW), (sH, sW) = self.kernel, self.stride
        (pH, pW), (dH, dW) = self.padding, self.dilation
        return (conv_output_size(height, kH, sH, pH, dH),
                conv_output_size(width, kW, sW, pW, dW))


def check_input(shape, params: ConvParams) -> Tuple[int, int]:
    """
    Validate an input shape against the parameters before any work is done.
    Returns the output spatial size.
    """
    if len(shape) not in (3, 4):
        raise ValueError(f"expected 3D (C, H, W) or 4D (N, C, H, W) input, got shape {tuple(shape)}")

    C, H, W = shape[-3:]
    if C != params.in_channels:
        raise ValueError(f"input has {C} channels, layer expects {params.in_channels}")

    out_h, out_w = params.output_shape(H, W)
    if out_h < 1 or out_w < 1:
        raise ValueError(
            f"input size ({C}x{H}x{W}) too small: calculated output size "
            f"({params.out_channels}x{out_h}x{out_w}) with kernel {params.kernel}, "
            f"stride {params.stride}, padding {params.padding}, dilation {params.dilation}")
    return out_h, out_w


def im2col(x, kH, kW, stride=1, padding=0, dilation=1):
    """
    Unfold dilated patches of x (N, C, H, W) into rows.

    Row (n, y, x) holds x[n, c, y*sH + i*dH - pH, x*sW + j*dW - pW] for every
    (c, i, j), zero where the position falls in the padding.
    Returns (cols, out_h, out_w, padded_shape), cols is (N*out_h*out_w, C*kH*kW).
    """
    xp = get_xp_from_array(x)
    N, C, H, W = x.shape
    sH, sW = _pair(stride)
    pH, pW = _pair(padding)
    dH, dW = _pair(dilation)

    out_h = conv_output_size(H, kH, sH, pH, dH)
    out_w = conv_output_size(W, kW, sW, pW, dW)

    if pH > 0 or pW > 0:
        x_pad = xp.pad(x, ((0, 0), (0, 0), (pH, pH), (pW, pW)), mode="constant")
    else:
        x_pad = x

    col = xp.empty((N, C, kH, kW, out_h, out_w), dtype=x.dtype)
    for i in range(kH):
        y0 = i * dH
        y1 = y0 + sH * out_h
        for j in range(kW):
            x0 = j * dW
            x1 = x0 + sW * out_w
            col[:, :, i, j, :, :] = x_pad[:, :, y0:y1:sH, x0:x1:sW]

    cols = col.transpose(0, 4, 5, 1, 2, 3).reshape(N * out_h * out_w, C * kH * kW)
    return cols, out_h, out_w, x_pad.shape


def col2im(cols, x_shape, kH, kW, out_h, out_w, stride=1, padding=0, dilation=1):
    """
    Adjoint of im2col: scatter-add rows back onto an (N, C, H, W) array.
    """
    xp = get_xp_from_array(cols)
    N, C, H, W = x_shape
    sH, sW = _pair(stride)
    pH, pW = _pair(padding)
    dH, dW = _pair(dilation)

    col = cols.reshape(N, out_h, out_w, C, kH, kW).transpose(0, 3, 4, 5, 1, 2)
    dx_pad = xp.zeros((N, C, H + 2 * pH, W + 2 * pW), dtype=cols.dtype)

    for i in range(kH):
        y0 = i * dH
        y1 = y0 + sH * out_h
        for j in range(kW):
            x0 = j * dW
            x1 = x0 + sW * out_w
            dx_pad[:, :, y0:y1:sH, x0:x1:sW] += col[:, :, i, j, :, :]

    return dx_pad[:, :, pH:pH + H, pW:pW + W]


def _as_batch(x):
    # (C, H, W) -> (1, C, H, W), remembering whether to squeeze back
    if x.ndim == 3:
        return x[None], True
    return x, False


def conv2d_forward(x, weight, bias, params: ConvParams):
    """
    out[n, o, y, x] = sum_{i, kh, kw} weight[o, i, kh, kw]
                      * x[n, i, y*sH + kh*dH - pH, x*sW + kw*dW - pW] + bias[o]
    """
    xp = get_xp_from_array(x)
    check_input(x.shape, params)
    if tuple(weight.shape) != params.weight_shape:
        raise ValueError(f"weight shape {tuple(weight.shape)} does not match {params.weight_shape}")

    xb, squeeze = _as_batch(x)
    N = xb.shape[0]
    F = params.out_channels
    kH, kW = params.kernel

    cols, out_h, out_w, _ = im2col(xb, kH, kW, params.stride, params.padding, params.dilation)
    out = cols @ weight.reshape(F, -1).T  # (N*out_h*out_w, F)
    out = out.reshape(N, out_h, out_w, F).transpose(0, 3, 1, 2)

    if bias is not None:
        out = out + bias.reshape(1, F, 1, 1)

    out = xp.ascontiguousarray(out)
    return out[0] if squeeze else out


def conv2d_backward(x, weight, grad_output, params: ConvParams,
                    grad_weight=None, grad_bias=None, scale=1.0, need_input=True):
    """
    Backward pass of conv2d_forward.

    Returns grad_input (same shape as x), or None when need_input is False.
    If grad_weight / grad_bias buffers are given, scale * dL/dweight and
    scale * dL/dbias are added into them in place; existing contents are kept
    so repeated calls accumulate.
    x must be the input of the matching forward call.
    """
    out_h, out_w = check_input(x.shape, params)

    xb, squeeze = _as_batch(x)
    gb = grad_output[None] if squeeze else grad_output
    N, C, H, W = xb.shape
    F = params.out_channels
    kH, kW = params.kernel

    expected = (N, F, out_h, out_w)
    if tuple(gb.shape) != expected:
        want = expected[1:] if squeeze else expected
        raise ValueError(f"grad_output shape {tuple(grad_output.shape)} does not match output shape {want}")

    dout = gb.transpose(0, 2, 3, 1).reshape(N * out_h * out_w, F)
    w_col = weight.reshape(F, -1)  # (F, C*kH*kW)

    # 1. input
    grad_input = None
    if need_input:
        d_cols = dout @ w_col
        grad_input = col2im(d_cols, xb.shape, kH, kW, out_h, out_w,
                            params.stride, params.padding, params.dilation)
        if squeeze:
            grad_input = grad_input[0]

    # 2. weight
    if grad_weight is not None:
        cols, _, _, _ = im2col(xb, kH, kW, params.stride, params.padding, params.dilation)
        dW = (dout.T @ cols).reshape(params.weight_shape)
        grad_weight += scale * dW

    # 3. bias
    if grad_bias is not None:
        db = dout.sum(axis=0)
        grad_bias += scale * db

    return grad_input
