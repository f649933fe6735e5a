from tinyconv.device import get_xp_from_array

class Optimizer:
    def __init__(self, params):
        self.params = list(params)

    def zero_grad(self):
        for p in self.params:
            p.grad = None

    def step(self):
        raise NotImplementedError

class SGD(Optimizer):
    """
    Plain SGD with optional learning-rate decay, L2 weight decay and momentum.

      clr = lr / (1 + t * lr_decay)            t = steps taken so far
      g   = grad + weight_decay * param
      buf = g                                  first step
      buf = momentum * buf + (1 - dampening) * g
      g   = g + momentum * buf if nesterov else buf
      param -= clr * g
    """

    def __init__(self, params, lr=1e-2, lr_decay=0.0, weight_decay=0.0, momentum=0.0,
                 dampening=None, nesterov=False):
        super().__init__(params)
        if lr < 0:
            raise ValueError(f"invalid learning rate: {lr}")
        if weight_decay < 0:
            raise ValueError(f"invalid weight_decay: {weight_decay}")
        if dampening is None:
            dampening = 0.0 if nesterov else momentum
        if nesterov and (momentum <= 0 or dampening != 0):
            raise ValueError("nesterov momentum requires momentum > 0 and zero dampening")

        self.lr = lr
        self.lr_decay = lr_decay
        self.weight_decay = weight_decay
        self.momentum = momentum
        self.dampening = dampening
        self.nesterov = nesterov

        # state
        self.t = 0
        self.buf = [None for _ in self.params]

    def current_lr(self):
        return self.lr / (1 + self.t * self.lr_decay)

    def step(self):
        clr = self.current_lr()

        for i, p in enumerate(self.params):
            if not p.requires_grad or p.grad is None:
                continue

            g = p.grad
            if self.weight_decay != 0:
                g = g + self.weight_decay * p.data

            if self.momentum != 0:
                if self.buf[i] is None:
                    self.buf[i] = g.copy()
                else:
                    self.buf[i] = self.momentum * self.buf[i] + (1 - self.dampening) * g
                if self.nesterov:
                    g = g + self.momentum * self.buf[i]
                else:
                    g = self.buf[i]

            p.data -= clr * g

        self.t += 1
        return clr

    def state_dict(self):
        return {
            "t": self.t,
            "buf": [None if b is None else b.copy() for b in self.buf],
            "lr": self.lr,
            "lr_decay": self.lr_decay,
            "weight_decay": self.weight_decay,
            "momentum": self.momentum,
            "dampening": self.dampening,
            "nesterov": self.nesterov,
        }

    def load_state_dict(self, sd):
        self.t = int(sd["t"])
        self.lr = float(sd.get("lr", self.lr))
        self.lr_decay = float(sd.get("lr_decay", self.lr_decay))
        self.weight_decay = float(sd.get("weight_decay", self.weight_decay))
        self.momentum = float(sd.get("momentum", self.momentum))
        self.dampening = float(sd.get("dampening", self.dampening))
        self.nesterov = bool(sd.get("nesterov", self.nesterov))

        buf = sd["buf"]
        if len(buf) != len(self.params):
            raise ValueError(f"SGD state mismatch: got {len(buf)} slots, expected {len(self.params)}")

        for i, p in enumerate(self.params):
            if buf[i] is not None and buf[i].shape != p.data.shape:
                raise ValueError(f"SGD slot shape mismatch at idx {i}: buf {buf[i].shape} vs param {p.data.shape}")

        self.buf = [None if b is None else get_xp_from_array(p.data).asarray(b).copy()
                    for b, p in zip(buf, self.params)]
