from dataclasses import dataclass

import numpy as np

from skaggregate.aggregation._base import AlgorithmState, BaseStrategy
from skaggregate.aggregation._loss import BaseLoss, SquareLoss, make_loss
from skaggregate.aggregation._utils import RIDGE_EPSILON
from skaggregate.exceptions import ConfigurationError, SingularMatrix


@dataclass
class RidgeState(AlgorithmState):
    """Statistics of the online ridge regression.

    Attributes
    ----------
    moment : ndarray of shape (n_experts, n_experts)
        Second-moment matrix ``A = sum_t x_t x_t^T``.
    cross_moment : ndarray of shape (n_experts,)
        ``b = sum_t y_t x_t``.
    precision : ndarray of shape (n_experts, n_experts) or None
        ``(A + lambda I)^{-1}`` kept by rank-one updates when ``lambda > 0``.
    """

    moment: np.ndarray | None = None
    cross_moment: np.ndarray | None = None
    precision: np.ndarray | None = None


class Ridge(BaseStrategy):
    r"""Online ridge regression of the observations on the expert forecasts.

    .. math::

        w_{t+1} = \Big(\lambda I + \sum_{s \le t} x_s x_s^\top\Big)^{-1}
                  \Big(\lambda w_1 + \sum_{s \le t} y_s x_s\Big)

    The weights are unconstrained. For ``lambda_reg > 0`` the inverse is
    maintained with Sherman–Morrison rank-one updates (O(K^2) per step), with
    a full recomputation every `recompute_every` steps to bound round-off
    drift. For ``lambda_reg == 0`` the normal equations are solved directly;
    while the moment matrix is singular it is regularised with a small
    multiple of the identity and the step is flagged ``"singular_moment"``.

    Parameters
    ----------
    lambda_reg : float, default=1.0
        Regularisation toward the prior weights, must be non-negative.
    recompute_every : int, default=100
        Period of the full inverse recomputation.
    loss : str | BaseLoss, default="square"
        Only the square loss is supported.

    References
    ----------
    .. [1] Vovk, V. (2001). Competitive on-line statistics. International
       Statistical Review, 69(2), 213–248.
    .. [2] Azoury, K. S., & Warmuth, M. K. (2001). Relative loss bounds for
       on-line density estimation with the exponential family of distributions.
       Machine Learning, 43(3), 211–246.
    """

    state_class = RidgeState
    hyperparameter_names = ("lambda_reg",)
    simplex = False

    def __init__(
        self,
        lambda_reg: float = 1.0,
        recompute_every: int = 100,
        loss: str | BaseLoss = "square",
        *,
        loss_gradient: bool = False,
    ):
        if not isinstance(make_loss(loss), SquareLoss):
            raise ConfigurationError("Ridge aggregation supports the square loss only")
        super().__init__(loss, loss_gradient=loss_gradient)
        if not lambda_reg >= 0:
            raise ConfigurationError(
                f"lambda_reg must be non-negative, got {lambda_reg}"
            )
        if recompute_every < 1:
            raise ConfigurationError("recompute_every must be a positive integer")
        self.lambda_reg = float(lambda_reg)
        self.recompute_every = int(recompute_every)

    def _init_state(self, state: RidgeState) -> None:
        n = state.n_experts
        state.moment = np.zeros((n, n), dtype=float)
        state.cross_moment = np.zeros(n, dtype=float)
        if self.lambda_reg > 0:
            state.precision = np.eye(n) / self.lambda_reg

    def _update(self, state, x, y, prediction, prediction_loss, expert_losses):
        state.moment = state.moment + np.outer(x, x)
        state.cross_moment = state.cross_moment + y * x
        if self.lambda_reg > 0:
            state.weights = self._regularized_weights(state, x)
        else:
            state.weights = self._unregularized_weights(state)

    def _regularized_weights(self, state: RidgeState, x: np.ndarray) -> np.ndarray:
        if (state.t + 1) % self.recompute_every == 0:
            state.precision = np.linalg.inv(
                state.moment + self.lambda_reg * np.eye(state.n_experts)
            )
        else:
            px = state.precision @ x
            state.precision = state.precision - np.outer(px, px) / (1.0 + x @ px)
        rhs = self.lambda_reg * state.initial_weights + state.cross_moment
        return state.precision @ rhs

    def _unregularized_weights(self, state: RidgeState) -> np.ndarray:
        A = state.moment
        b = state.cross_moment
        if np.linalg.cond(A) < 1.0 / np.finfo(float).eps:
            return np.linalg.solve(A, b)
        state.events.append("singular_moment")
        eps = RIDGE_EPSILON * max(1.0, float(np.trace(A)) / state.n_experts)
        try:
            return np.linalg.solve(A + eps * np.eye(state.n_experts), b)
        except np.linalg.LinAlgError as exc:
            raise SingularMatrix(
                "second-moment matrix is singular even after regularisation"
            ) from exc
