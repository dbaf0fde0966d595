"""Hindsight oracles for expert aggregation.

Implements the best combinations of the experts over a complete window:

- expert: best single expert
- uniform: uniform average
- convex: best fixed convex combination (cvxpy)
- linear: best fixed linear combination (least squares or cvxpy)
- shifting: best sequence of experts with a bounded number of switches
  (dynamic programming)

These benchmarks use the whole window and are only meant for evaluating online
mixtures, never for live prediction.

References
----------
- Cesa-Bianchi, N., & Lugosi, G. (2006). Prediction, Learning, and Games.
- Herbster, M., & Warmuth, M. K. (1998). Tracking the best expert.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, fields

import cvxpy as cp
import numpy as np
import numpy.typing as npt
from sklearn.utils.parallel import Parallel, delayed

from skaggregate.aggregation._loss import BaseLoss, CustomLoss, SquareLoss, make_loss
from skaggregate.aggregation._mixins import OracleKind
from skaggregate.aggregation._utils import check_experts_and_observations, one_hot
from skaggregate.exceptions import (
    ConfigurationError,
    InfeasibleOracle,
    OracleCancelled,
    OracleDimensionMismatch,
)

_SOLVED = (cp.OPTIMAL, cp.OPTIMAL_INACCURATE)


@dataclass(frozen=True)
class OracleResult:
    """Immutable outcome of an oracle.

    Attributes
    ----------
    kind : OracleKind
        Oracle that produced the result.
    weights : ndarray of shape (n_experts,) or (n_samples, n_experts)
        Fixed weights, or the one-hot path of the shifting oracle.
    loss : float
        Cumulative loss over the window.
    predictions : ndarray of shape (n_samples,)
        Oracle predictions.
    step_losses : ndarray of shape (n_samples,)
        Per-step losses.
    status : str
        Solver status, ``"optimal"`` for closed-form oracles.
    shifting_losses : ndarray of shape (max_shifts + 1,), optional
        Best loss with at most ``m`` switches, for the shifting oracle.
    """

    kind: OracleKind
    weights: np.ndarray
    loss: float
    predictions: np.ndarray
    step_losses: np.ndarray
    status: str = "optimal"
    shifting_losses: np.ndarray | None = None

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                value = value.copy()
                value.setflags(write=False)
                object.__setattr__(self, f.name, value)


def _resolve_kind(kind: OracleKind | str) -> OracleKind:
    try:
        return OracleKind.from_name(kind)
    except KeyError:
        raise ConfigurationError(
            f"Unknown oracle kind {kind!r}. Choose one of "
            f"{[k.value for k in OracleKind]}."
        ) from None


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OracleCancelled("oracle computation was cancelled")


def _fixed_result(
    kind: OracleKind,
    w: np.ndarray,
    X: np.ndarray,
    y: np.ndarray,
    loss: BaseLoss,
    status: str = "optimal",
) -> OracleResult:
    predictions = X @ w
    step_losses = np.asarray(loss.loss(predictions, y), dtype=float)
    return OracleResult(
        kind=kind,
        weights=w,
        loss=float(np.sum(step_losses)),
        predictions=predictions,
        step_losses=step_losses,
        status=status,
    )


def _solve(
    problem: cp.Problem,
    solver: str | None,
    solver_params: dict | None,
    time_limit: float | None,
) -> None:
    params = dict(solver_params or {})
    if time_limit is not None:
        params.setdefault("time_limit", float(time_limit))
    try:
        problem.solve(solver=solver, **params)
    except cp.error.SolverError as exc:
        if time_limit is not None:
            # a bounded solve is never retried without its limit
            raise InfeasibleOracle(f"solver failed: {exc}") from exc
        try:
            problem.solve(**params)
        except cp.error.SolverError as retry_exc:
            raise InfeasibleOracle(f"solver failed: {retry_exc}") from retry_exc


def _convex_weights(
    X: np.ndarray,
    y: np.ndarray,
    loss: BaseLoss,
    *,
    simplex: bool,
    lambda_reg: float,
    solver: str | None,
    solver_params: dict | None,
    time_limit: float | None,
) -> tuple[np.ndarray, str]:
    n = X.shape[1]
    w = cp.Variable(n)
    objective = loss.cvx_loss(X @ w, y)
    if lambda_reg > 0:
        objective = objective + lambda_reg * cp.sum_squares(w)
    constraints = [w >= 0, cp.sum(w) == 1] if simplex else []
    problem = cp.Problem(cp.Minimize(objective), constraints)
    _solve(problem, solver, solver_params, time_limit)
    if w.value is None or problem.status not in _SOLVED:
        raise InfeasibleOracle(
            f"oracle optimization failed with status {problem.status!r}"
        )
    w_opt = np.asarray(w.value, dtype=float)
    if simplex:
        w_opt = np.maximum(w_opt, 0.0)
        w_opt = w_opt / np.sum(w_opt)
    return w_opt, str(problem.status)


def _shifting_path(
    L: np.ndarray, max_shifts: int, cancel_event: threading.Event | None
) -> tuple[np.ndarray, np.ndarray]:
    """Best expert sequence with at most `max_shifts` switches.

    Parameters
    ----------
    L : ndarray of shape (T, K)
        Per-step expert losses.

    Returns
    -------
    path : ndarray of shape (T,)
        Expert index played at each step.
    shifting_losses : ndarray of shape (max_shifts + 1,)
        Best cumulative loss with at most m switches, for m = 0..max_shifts.
    """
    T, K = L.shape
    M = max_shifts
    cost = np.full((M + 1, K), np.inf)
    cost[0] = L[0]
    # back[t, m, k]: expert at t-1 on the best path ending in (m switches, k) at t
    back = np.zeros((T, M + 1, K), dtype=int)
    back[0] = np.arange(K)
    arange = np.arange(K)
    for t in range(1, T):
        _check_cancelled(cancel_event)
        new_cost = cost.copy()
        back[t] = arange
        if M > 0 and K > 1:
            order = np.argsort(cost[:-1], axis=1, kind="stable")
            first, second = order[:, 0], order[:, 1]
            best_other = np.where(
                first[:, None] == arange[None, :], second[:, None], first[:, None]
            )
            switch_cost = np.take_along_axis(cost[:-1], best_other, axis=1)
            better = switch_cost < new_cost[1:]
            new_cost[1:] = np.where(better, switch_cost, new_cost[1:])
            back[t, 1:] = np.where(better, best_other, arange[None, :])
        cost = new_cost + L[t][None, :]

    best_per_shift = np.min(cost, axis=1)
    shifting_losses = np.minimum.accumulate(best_per_shift)

    m = int(np.argmin(best_per_shift))
    k = int(np.argmin(cost[m]))
    path = np.empty(T, dtype=int)
    for t in range(T - 1, -1, -1):
        path[t] = k
        prev = back[t, m, k]
        if prev != k:
            m -= 1
        k = int(prev)
    return path, shifting_losses


def oracle(
    y: npt.ArrayLike,
    X: npt.ArrayLike,
    loss: str | BaseLoss = "square",
    kind: OracleKind | str = OracleKind.CONVEX,
    *,
    quantile: float = 0.5,
    zero_division: str = "absolute",
    lambda_reg: float = 0.0,
    max_shifts: int | None = None,
    solver: str | None = "CLARABEL",
    solver_params: dict | None = None,
    time_limit: float | None = None,
    cancel_event: threading.Event | None = None,
) -> OracleResult:
    r"""Best combination of the experts in hindsight.

    Parameters
    ----------
    y : array-like of shape (n_samples,)
        Observations.
    X : array-like of shape (n_samples, n_experts)
        Expert forecasts aligned with `y`.
    loss : str | BaseLoss, default="square"
        Loss to minimise.
    kind : {"expert", "uniform", "convex", "linear", "shifting"}, default="convex"
        Oracle to compute.

        - ``"expert"``: :math:`\arg\min_k \sum_t \ell(x_{t,k}, y_t)`, ties to the
          lowest index.
        - ``"uniform"``: weights :math:`1/K`.
        - ``"convex"``: :math:`\min_{w \in \Delta_K} \sum_t \ell(w^\top x_t, y_t)`,
          a quadratic program for the square loss and a linear program for the
          absolute, percentage and pinball losses.
        - ``"linear"``: the same without constraints. Solved exactly with
          least squares for the square loss.
        - ``"shifting"``: best sequence of experts switching at most
          `max_shifts` times.

    quantile : float, default=0.5
        Level of the pinball loss.
    zero_division : {"absolute", "raise"}, default="absolute"
        Percentage loss policy for observations equal to 0.
    lambda_reg : float, default=0.0
        Ridge penalty :math:`\lambda \|w\|^2` for the linear oracle.
    max_shifts : int, optional
        Required for the shifting oracle.
    solver : str, default="CLARABEL"
        CVXPY solver for the convex and linear oracles.
    solver_params : dict, optional
        Additional solver parameters.
    time_limit : float, optional
        Time limit in seconds, forwarded to the solver as ``time_limit``.
    cancel_event : threading.Event, optional
        Checked between phases and at every step of the dynamic program.

    Returns
    -------
    OracleResult

    Raises
    ------
    OracleDimensionMismatch
        If there are no experts, no steps, or `X` and `y` do not align.
    InfeasibleOracle
        If the solver fails.
    OracleCancelled
        If `cancel_event` is set.
    ConfigurationError
        On an unknown kind or a loss without convex formulation.
    """
    kind = _resolve_kind(kind)
    loss = make_loss(loss, quantile=quantile, zero_division=zero_division)
    X_arr, y_arr = check_experts_and_observations(X, y, error=OracleDimensionMismatch)
    T, K = X_arr.shape
    if K == 0 or T == 0:
        raise OracleDimensionMismatch(
            f"oracle needs at least one expert and one step, got shape {X_arr.shape}"
        )
    if not (np.all(np.isfinite(X_arr)) and np.all(np.isfinite(y_arr))):
        raise InfeasibleOracle("expert forecasts and observations must be finite")
    _check_cancelled(cancel_event)

    match kind:
        case OracleKind.EXPERT:
            L = np.asarray(loss.loss(X_arr, y_arr[:, None]), dtype=float)
            best = int(np.argmin(L.sum(axis=0)))
            return _fixed_result(kind, one_hot(best, K), X_arr, y_arr, loss)

        case OracleKind.UNIFORM:
            return _fixed_result(kind, np.full(K, 1.0 / K), X_arr, y_arr, loss)

        case OracleKind.CONVEX | OracleKind.LINEAR:
            if isinstance(loss, CustomLoss):
                raise ConfigurationError(
                    "custom losses are not supported by the convex and linear oracles"
                )
            simplex = kind == OracleKind.CONVEX
            if not simplex and isinstance(loss, SquareLoss):
                w = _least_squares(X_arr, y_arr, lambda_reg)
                status = "optimal"
            else:
                w, status = _convex_weights(
                    X_arr,
                    y_arr,
                    loss,
                    simplex=simplex,
                    lambda_reg=0.0 if simplex else lambda_reg,
                    solver=solver,
                    solver_params=solver_params,
                    time_limit=time_limit,
                )
            _check_cancelled(cancel_event)
            return _fixed_result(kind, w, X_arr, y_arr, loss, status=status)

        case OracleKind.SHIFTING:
            if max_shifts is None or max_shifts < 0:
                raise ConfigurationError(
                    "the shifting oracle requires a non-negative max_shifts"
                )
            L = np.asarray(loss.loss(X_arr, y_arr[:, None]), dtype=float)
            path, shifting_losses = _shifting_path(L, int(max_shifts), cancel_event)
            W = np.zeros((T, K), dtype=float)
            W[np.arange(T), path] = 1.0
            step_losses = L[np.arange(T), path]
            return OracleResult(
                kind=kind,
                weights=W,
                loss=float(np.sum(step_losses)),
                predictions=X_arr[np.arange(T), path],
                step_losses=step_losses,
                shifting_losses=shifting_losses,
            )


def _least_squares(X: np.ndarray, y: np.ndarray, lambda_reg: float) -> np.ndarray:
    if lambda_reg > 0:
        K = X.shape[1]
        return np.linalg.solve(X.T @ X + lambda_reg * np.eye(K), X.T @ y)
    w, *_ = np.linalg.lstsq(X, y, rcond=None)
    return w


def compute_oracles(
    y: npt.ArrayLike,
    X: npt.ArrayLike,
    loss: str | BaseLoss = "square",
    kinds: tuple[OracleKind | str, ...] = ("expert", "uniform", "convex", "linear"),
    n_jobs: int | None = None,
    **oracle_params,
) -> dict[OracleKind, OracleResult]:
    """Evaluate several oracles, in parallel threads when `n_jobs` is set.

    The oracles share no state; the returned dict follows the order of `kinds`
    whatever the completion order.

    Examples
    --------
    >>> import numpy as np
    >>> X = np.array([[1.0, 3.0], [1.0, 3.0], [1.0, 3.0]])
    >>> results = compute_oracles([1.0, 1.0, 1.0], X, kinds=("expert", "uniform"))
    >>> [r.loss for r in results.values()]
    [0.0, 3.0]
    """
    resolved = [_resolve_kind(k) for k in kinds]
    results = Parallel(n_jobs=n_jobs, backend="threading")(
        delayed(oracle)(y, X, loss, kind, **oracle_params) for kind in resolved
    )
    return dict(zip(resolved, results))
