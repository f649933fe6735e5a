# examples/l2_regularizer_crosscheck.py
import numpy as np
from tinyconv.tensor import Tensor
from tinyconv.nn import DilatedConv2d, Sequential, Sigmoid
from tinyconv.losses import mse_loss
from tinyconv.optim import SGD
from tinyconv.regularizers import L2Regularizer

def make_model(rng=None, decay=0.0):
    reg = L2Regularizer(decay) if decay else None
    return Sequential(
        DilatedConv2d(1, 1, 2, stride=1, padding=0, w_regularizer=reg, b_regularizer=reg, rng=rng),
        Sigmoid(),
    )

def train(model, opt, x, labels, steps, tag):
    loss = None
    for i in range(1, steps + 1):
        opt.zero_grad()
        out = model(x)
        loss = mse_loss(out, labels)
        loss.backward()
        opt.step()
        if i % 10 == 0 or i == 1:
            print(f"[{tag}] {i:3d}-th loss = {float(loss.data):.8f}")
    return float(loss.data)

def main():
    rng = np.random.RandomState(0)
    decay = 0.1

    x = Tensor(np.arange(1.0, 10.0).reshape(1, 3, 3))
    labels = rng.rand(1, 2, 2)

    # weight decay in the optimizer vs the same penalty as a layer regularizer
    model1 = make_model(rng)
    model2 = make_model(decay=decay)
    model2.load_state_dict(model1.state_dict())

    opt1 = SGD(model1.parameters(), lr=0.1, lr_decay=5e-7, weight_decay=decay, momentum=0.002)
    opt2 = SGD(model2.parameters(), lr=0.1, lr_decay=5e-7, weight_decay=0.0, momentum=0.002)

    loss1 = train(model1, opt1, x, labels, 100, "weight_decay")
    loss2 = train(model2, opt2, x, labels, 100, "l2_regularizer")

    sd1, sd2 = model1.state_dict(), model2.state_dict()
    max_diff = max(float(np.max(np.abs(sd1[k] - sd2[k]))) for k in sd1)

    print("=" * 50)
    print(f"final loss  weight_decay={loss1:.10f}  l2_regularizer={loss2:.10f}")
    print(f"max |w1 - w2| = {max_diff:.3e}")
    assert max_diff < 1e-12 and abs(loss1 - loss2) < 1e-12
    print("[OK] L2 regularizer matches optimizer weight decay")

if __name__ == "__main__":
    main()
