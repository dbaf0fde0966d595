import numpy as np
from numpy.typing import ArrayLike
from scipy.special import softmax

from skaggregate.exceptions import DimensionMismatch, NumericDegeneracy

CLIP_EPSILON = 1e-12
RIDGE_EPSILON = 1e-8


def normalize_weights(w: ArrayLike) -> np.ndarray:
    """Rescale non-negative weights to unit sum, uniform when they collapse."""
    w_arr = np.asarray(w, dtype=float)
    s = float(np.sum(w_arr))
    if not np.isfinite(s) or s <= 0:
        return np.full(w_arr.shape[0], 1.0 / w_arr.shape[0])
    return w_arr / s


def normalize_log_weights(log_w: ArrayLike) -> np.ndarray:
    """Map unnormalized log-weights to the simplex without overflow."""
    return softmax(np.asarray(log_w, dtype=float), axis=0)


def one_hot(index: int, n: int) -> np.ndarray:
    w = np.zeros(n, dtype=float)
    w[index] = 1.0
    return w


def check_row(x: ArrayLike, n_experts: int) -> np.ndarray:
    """Return one expert row as a finite 1D array of length `n_experts`."""
    x_arr = np.asarray(x, dtype=float)
    if x_arr.ndim == 2 and x_arr.shape[0] == 1:
        x_arr = x_arr[0]
    if x_arr.ndim != 1 or x_arr.shape[0] != n_experts:
        raise DimensionMismatch(
            f"expected a row of {n_experts} expert forecasts, got shape {x_arr.shape}"
        )
    if not np.all(np.isfinite(x_arr)):
        raise NumericDegeneracy("expert forecasts must be finite")
    return x_arr


def check_observation(y: ArrayLike) -> float:
    y_arr = np.asarray(y, dtype=float)
    if y_arr.size != 1:
        raise DimensionMismatch(
            f"expected a single observation, got shape {y_arr.shape}"
        )
    value = float(y_arr.reshape(-1)[0])
    if not np.isfinite(value):
        raise NumericDegeneracy("observation must be finite")
    return value


def check_experts_and_observations(
    X: ArrayLike, y: ArrayLike, error: type[Exception] = DimensionMismatch
) -> tuple[np.ndarray, np.ndarray]:
    """Validate an expert matrix of shape (T, K) against observations (T,)."""
    X_arr = np.asarray(X, dtype=float)
    y_arr = np.asarray(y, dtype=float).reshape(-1)
    if X_arr.ndim == 1:
        X_arr = X_arr.reshape(-1, 1)
    if X_arr.ndim != 2:
        raise error(f"expert matrix must be 2D, got {X_arr.ndim}D")
    if X_arr.shape[0] != y_arr.shape[0]:
        raise error(
            f"expert matrix has {X_arr.shape[0]} rows but {y_arr.shape[0]} "
            "observations were given"
        )
    return X_arr, y_arr
