"""Projection utilities and projector classes for expert weights."""

# SPDX-License-Identifier: BSD-3-Clause

import numpy as np
from numpy.typing import ArrayLike


class BaseProjector:
    def project(self, y: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class IdentityProjector(BaseProjector):
    """No-op projector for unconstrained (linear combination) weights."""

    def project(self, y: np.ndarray) -> np.ndarray:
        return np.asarray(y, dtype=float)


class SimplexProjector(BaseProjector):
    """Euclidean projector onto the probability simplex scaled by `budget`."""

    def __init__(self, budget: float = 1.0):
        self.budget = budget

    def project(self, y: np.ndarray) -> np.ndarray:
        return project_simplex(y, budget=self.budget)


def project_simplex(y: ArrayLike, budget: float = 1.0) -> np.ndarray:
    """
    Euclidean projection onto ``{ w ∈ R^n | w ≥ 0, sum(w) = budget }``.

    Uses the sort-and-threshold algorithm: with ``u`` the entries of ``y`` in
    decreasing order, the projection is ``max(y - theta, 0)`` where ``theta``
    is fixed by the largest index ``rho`` such that
    ``u_rho - (sum_{i<=rho} u_i - budget) / rho > 0``.

    Parameters
    ----------
    y : ArrayLike of shape (n,)
        Raw weights to be projected.
    budget : float, default=1.0
        Target sum of the weights. Must be positive.

    Returns
    -------
    w : ndarray of shape (n,)
        Projected weights.

    References
    ----------
    .. [1] Duchi, J., Shalev-Shwartz, S., Singer, Y., & Chandra, T. (2008).
       Efficient projections onto the l1-ball for learning in high dimensions.
    """
    y_arr = np.asarray(y, dtype=float)
    n = y_arr.shape[0]
    if n == 0:
        return y_arr
    b = float(budget)
    if b <= 0:
        raise ValueError("budget must be positive")

    u = np.sort(y_arr)[::-1]
    cssv = np.cumsum(u) - b
    rho = np.nonzero(u * np.arange(1, n + 1) > cssv)[0]
    if rho.size == 0:
        return np.full(n, b / n)
    rho = rho[-1]
    theta = cssv[rho] / (rho + 1.0)
    w = np.maximum(y_arr - theta, 0.0)
    # remove rounding drift on the budget
    s = float(np.sum(w))
    if s <= 0:
        return np.full(n, b / n)
    return w * (b / s)
