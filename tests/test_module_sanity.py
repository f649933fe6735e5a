import numpy as np
import pytest

from tinyconv.tensor import Tensor
from tinyconv.nn import DilatedConv2d, Sequential, Sigmoid
from tinyconv.losses import mse_loss
from tinyconv.optim import SGD
from tinyconv.regularizers import L2Regularizer
from tinyconv.gradcheck import gradcheck

def test_init_is_seeded_and_bounded():
    a = DilatedConv2d(3, 6, 3, padding=2, rng=np.random.RandomState(100))
    b = DilatedConv2d(3, 6, 3, padding=2, rng=np.random.RandomState(100))
    assert np.array_equal(a.W.data, b.W.data)
    assert np.array_equal(a.b.data, b.b.data)

    stdv = 1.0 / np.sqrt(3 * 3 * 3)
    assert a.W.shape == (6, 3, 3, 3)
    assert a.b.shape == (6,)
    assert np.all(np.abs(a.W.data) <= stdv)
    assert np.all(np.abs(a.b.data) <= stdv)

    g = DilatedConv2d(2, 2, 2, rng=np.random.default_rng(5))
    assert g.W.shape == (2, 2, 2, 2)

def test_no_bias_layer():
    layer = DilatedConv2d(2, 3, 3, bias=False, rng=np.random.RandomState(0))
    assert layer.b is None
    assert len(layer.parameters()) == 1

    x = np.random.RandomState(1).randn(2, 5, 5)
    y = layer.forward(x)
    layer.zero_grad()
    layer.backward(x, np.ones_like(y))
    assert layer.W.grad.shape == layer.W.shape

def test_state_dict_roundtrip():
    m1 = Sequential(DilatedConv2d(1, 2, 2, rng=np.random.RandomState(0)), Sigmoid())
    m2 = Sequential(DilatedConv2d(1, 2, 2, rng=np.random.RandomState(1)), Sigmoid())

    sd = m1.state_dict()
    assert sorted(sd) == ["layers.0.W", "layers.0.b"]
    m2.load_state_dict(sd)
    for k, v in m2.state_dict().items():
        assert np.array_equal(v, sd[k])

    # copies, not views
    sd["layers.0.W"][...] = 0.0
    assert m1.layers[0].W.data.any()

    with pytest.raises(ValueError, match="missing"):
        m2.load_state_dict({"layers.0.W": sd["layers.0.W"]})
    with pytest.raises(ValueError, match="shape mismatch"):
        m2.load_state_dict({"layers.0.W": np.zeros((1, 1, 2, 2)), "layers.0.b": sd["layers.0.b"]})

def test_train_eval_flags():
    m = Sequential(DilatedConv2d(1, 1, 1, rng=np.random.RandomState(0)), Sigmoid())
    m.eval()
    assert all(not mod.training for mod in m.modules())
    m.train()
    assert all(mod.training for mod in m.modules())

def test_mse_loss_value_and_grad():
    pred = Tensor(np.array([[1.0, 2.0], [3.0, 4.0]]), requires_grad=True)
    target = np.array([[1.0, 1.0], [1.0, 1.0]])

    loss = mse_loss(pred, target)
    assert np.isclose(loss.data, (0 + 1 + 4 + 9) / 4)
    loss.backward()
    assert np.allclose(pred.grad, 2 * (pred.data - target) / 4)

    with pytest.raises(ValueError):
        mse_loss(pred, np.zeros(3))

def test_sigmoid_conv_gradcheck():
    rng = np.random.RandomState(2)
    x = Tensor(rng.randn(1, 2, 5, 5), requires_grad=True)
    w = Tensor(rng.randn(2, 2, 2, 2), requires_grad=True)
    b = Tensor(rng.randn(2), requires_grad=True)
    target = rng.rand(1, 2, 3, 3)

    def loss(x, w, b):
        return mse_loss(x.conv2d(w, b, dilation=2).sigmoid(), target)

    gradcheck(loss, [x, w, b], eps=1e-6, tol=1e-5)

def test_frozen_weight_gets_no_grad_but_is_saved():
    rng = np.random.RandomState(3)
    layer = DilatedConv2d(1, 2, 2, w_regularizer=L2Regularizer(0.1), rng=rng)
    layer.W.requires_grad = False
    assert [n for n, _ in layer.named_parameters()] == ["b"]

    x = Tensor(rng.randn(1, 4, 4), requires_grad=True)
    (layer(x) * 1.0).sum().backward()
    assert layer.W.grad is None
    assert np.allclose(layer.b.grad, 9.0)
    assert x.grad is not None

    # explicit path leaves the frozen buffer alone too
    layer.zero_grad()
    assert layer.W.grad is None
    layer.backward(x.data, np.ones((2, 3, 3)))
    assert layer.W.grad is None

    sd = layer.state_dict()
    assert sorted(sd) == ["W", "b"]
    other = DilatedConv2d(1, 2, 2, rng=np.random.RandomState(4))
    other.W.requires_grad = False
    other.load_state_dict(sd)
    assert np.array_equal(other.W.data, layer.W.data)

def test_shared_layer_updated_once():
    layer = DilatedConv2d(1, 1, 1, rng=np.random.RandomState(0))
    model = Sequential(layer, Sigmoid(), layer)
    params = model.parameters()
    assert len(params) == 2
    assert params[0] is layer.W and params[1] is layer.b
    assert sorted(model.state_dict()) == ["layers.0.W", "layers.0.b"]
    assert len(model.modules()) == 3

    w0 = layer.W.data.copy()
    layer.W.grad = np.ones_like(layer.W.data)
    layer.b.grad = np.zeros_like(layer.b.data)
    SGD(params, lr=0.1).step()
    assert np.allclose(layer.W.data, w0 - 0.1)

def test_relu_forward_and_gradcheck():
    x = Tensor(np.array([[-2.0, -0.5], [0.5, 3.0]]), requires_grad=True)
    y = x.relu()
    assert np.array_equal(y.data, [[0.0, 0.0], [0.5, 3.0]])
    y.sum().backward()
    assert np.array_equal(x.grad, [[0.0, 0.0], [1.0, 1.0]])

    # values kept away from the kink at 0
    rng = np.random.RandomState(6)
    a = rng.uniform(0.2, 1.0, size=(2, 3)) * rng.choice([-1.0, 1.0], size=(2, 3))
    a = Tensor(a, requires_grad=True)
    w = Tensor(rng.randn(2, 3), requires_grad=True)
    gradcheck(lambda a, w: (a.relu() * w).sum(), [a, w], eps=1e-6, tol=1e-5)

def test_gradcheck_unused_input():
    rng = np.random.RandomState(7)
    a = Tensor(rng.randn(3), requires_grad=True)
    b = Tensor(rng.randn(2), requires_grad=True)
    errors = gradcheck(lambda a, b: (a * a).sum(), [a, b])
    assert sorted(errors) == [0, 1]
    assert errors[1] == 0.0

def main():
    test_init_is_seeded_and_bounded()
    test_no_bias_layer()
    test_state_dict_roundtrip()
    test_train_eval_flags()
    test_mse_loss_value_and_grad()
    test_sigmoid_conv_gradcheck()
    test_frozen_weight_gets_no_grad_but_is_saved()
    test_shared_layer_updated_once()
    test_relu_forward_and_gradcheck()
    test_gradcheck_unused_input()
    print("[OK] module sanity")

if __name__ == "__main__":
    main()
