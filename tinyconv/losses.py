from tinyconv.tensor import Tensor

def mse_loss(pred: Tensor, target):
    """
    pred: Tensor of any shape
    target: array or Tensor of the same shape, treated as a constant
    returns scalar Tensor, the mean of squared errors
    """
    target = target.detach() if isinstance(target, Tensor) else Tensor(target)
    if target.shape != pred.shape:
        raise ValueError(f"mse_loss shape mismatch: pred {pred.shape} vs target {target.shape}")

    diff = pred - target
    return (diff ** 2).mean()
