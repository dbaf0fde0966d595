import numpy as np

MODELS = ["EWA", "OGD", "Ridge", "MLpol", "MLprod", "MLewa", "BOA", "FixedShare"]
SIMPLEX_MODELS = [m for m in MODELS if m != "Ridge"]


def assert_simplex_trajectory(W: np.ndarray, atol=1e-9):
    W = np.atleast_2d(W)
    assert np.isfinite(W).all(), "Infinite weights!"
    assert np.all(W >= -1e-12), "negative weight"
    assert np.all(W <= 1 + 1e-12), "weight above one"
    assert np.all(np.abs(W.sum(axis=1) - 1.0) <= atol), "weights do not sum to one"


def make_exact_expert(T=200, offsets=(1.0, -2.0)):
    """Expert 0 forecasts the observations exactly, the others are shifted."""
    y = np.cos(np.arange(T) / 5.0)
    X = np.column_stack([y] + [y + off for off in offsets])
    return X, y


def make_switching_experts(T=10):
    """Expert 0 is exact on the first half, expert 1 on the second half."""
    y = np.zeros(T)
    X = np.zeros((T, 2))
    X[: T // 2, 1] = 1.0
    X[T // 2 :, 0] = 1.0
    return X, y
