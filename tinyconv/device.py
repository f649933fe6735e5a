import numpy as np

try:
    import cupy as cp
except ImportError:
    cp = None

def get_xp_from_array(x):
    # numpy or cupy, whichever owns x
    mod = type(x).__module__.split(".")[0]
    if mod == "cupy":
        return cp
    return np

def get_xp(device: str):
    if device in ("cpu", "np", "numpy"):
        return np
    if device in ("gpu", "cuda", "cupy"):
        if cp is None:
            raise ImportError("cupy not installed")
        return cp
    raise ValueError(f"unknown device: {device}")

def same_backend(a, b):
    return get_xp_from_array(a) is get_xp_from_array(b)

def to_device(x, device: str):
    xp = get_xp(device)
    if xp is np:
        return to_numpy(x)
    return cp.asarray(x)

def to_numpy(x):
    # host copy for comparing, saving or printing
    if cp is not None and isinstance(x, cp.ndarray):
        return cp.asnumpy(x)
    return x

def is_array(x):
    if isinstance(x, np.ndarray):
        return True
    return cp is not None and isinstance(x, cp.ndarray)
