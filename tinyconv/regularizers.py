# tinyconv/regularizers.py
"""
Penalty terms added straight into a parameter's gradient during backward.

A layer calls ``reg.accumulate(param, grad, scale)`` after its own gradient
has been accumulated, so an L2 penalty of ``c`` is the same update as an
optimizer weight decay of ``c``.
"""
from tinyconv.device import get_xp_from_array


class Regularizer:
    def accumulate(self, param, grad, scale=1.0):
        raise NotImplementedError

    def __call__(self, param, grad, scale=1.0):
        self.accumulate(param, grad, scale)


class L1L2Regularizer(Regularizer):
    def __init__(self, l1=0.0, l2=0.0):
        if l1 < 0 or l2 < 0:
            raise ValueError(f"regularization coefficients must be non-negative, got l1={l1} l2={l2}")
        self.l1 = float(l1)
        self.l2 = float(l2)

    def accumulate(self, param, grad, scale=1.0):
        if self.l1 != 0.0:
            xp = get_xp_from_array(param)
            grad += (self.l1 * scale) * xp.sign(param)
        if self.l2 != 0.0:
            grad += (self.l2 * scale) * param

    def __repr__(self):
        return f"{type(self).__name__}(l1={self.l1}, l2={self.l2})"


class L1Regularizer(L1L2Regularizer):
    def __init__(self, l1):
        super().__init__(l1=l1, l2=0.0)


class L2Regularizer(L1L2Regularizer):
    def __init__(self, l2):
        super().__init__(l1=0.0, l2=l2)
