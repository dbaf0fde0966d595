import numpy as np
from numpy.typing import ArrayLike
from sklearn.base import clone

from skaggregate.aggregation._mixins import OracleKind
from skaggregate.aggregation._mixture import Mixture
from skaggregate.aggregation._oracle import OracleResult, oracle


def _running_regret(
    online_losses: np.ndarray,
    comp_losses: np.ndarray,
    *,
    average: bool | str = False,
    window: int | None = None,
) -> np.ndarray:
    """Cumulative or sliding-window regret, optionally averaged."""
    match average:
        case True | "running":
            mode = "running"
        case False | "none":
            mode = "none"
        case "final":
            mode = "final"
        case _:
            raise ValueError(
                f"average must be one of False, True, 'none', 'running' or "
                f"'final', got {average!r}"
            )

    n_steps = online_losses.size
    cumulative = np.concatenate(([0.0], np.cumsum(online_losses - comp_losses)))
    if window is None:
        curve = cumulative[1:]
        scale = np.arange(1, n_steps + 1, dtype=float)
    else:
        window = int(window)
        if not 1 <= window <= n_steps:
            raise ValueError(f"window must be in [1, {n_steps}], got {window}")
        # Steps before the first full window stay at zero.
        curve = np.zeros(n_steps)
        curve[window - 1 :] = cumulative[window:] - cumulative[: n_steps - window + 1]
        scale = np.full(n_steps, float(window))

    if mode == "running":
        return curve / scale
    if mode == "final":
        return np.full(n_steps, curve[-1] / scale[-1])
    return curve


def regret(
    estimator: Mixture,
    X: ArrayLike,
    y: ArrayLike,
    *,
    comparator: OracleKind | str | OracleResult = OracleKind.CONVEX,
    average: bool | str = False,
    window: int | None = None,
    **oracle_params,
) -> np.ndarray:
    r"""Regret curve of an online mixture against a hindsight oracle.

    .. math::

        R_t = \sum_{s \le t} \ell(\hat y_s, y_s) - \ell(\hat y^{*}_s, y_s)

    Parameters
    ----------
    estimator : Mixture
        Online mixture. A clone is fitted on `X`, `y`; the estimator itself is
        left untouched.
    X : array-like of shape (T, n_experts)
        Expert forecasts.
    y : array-like of shape (T,)
        Observations.
    comparator : OracleKind | str | OracleResult, default="convex"
        Oracle kind computed with the mixture's loss, or a precomputed result.
    average : {False, "none", True, "running", "final"}, default=False
        `True`/"running" divides the curve by the number of steps (or the
        window size); "final" returns the last averaged value at every step.
    window : int, optional
        Sliding-window size. Steps before the first full window are zero.
    **oracle_params
        Forwarded to :func:`oracle` (``max_shifts``, ``solver``, ...).

    Returns
    -------
    ndarray of shape (T,)
        Regret curve. Steps that failed during fitting count as ``nan``.
    """
    est = clone(estimator).fit(X, y)
    online_losses = est.losses_

    if isinstance(comparator, OracleResult):
        result = comparator
    else:
        result = oracle(y, X, loss=est.loss_, kind=comparator, **oracle_params)
    comp_losses = np.asarray(result.step_losses, dtype=float)
    if comp_losses.shape != online_losses.shape:
        raise ValueError(
            f"comparator has {comp_losses.size} step losses, expected "
            f"{online_losses.size}"
        )
    return _running_regret(online_losses, comp_losses, average=average, window=window)
