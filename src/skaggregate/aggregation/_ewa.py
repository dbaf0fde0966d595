"""Exponentially weighted average and fixed share."""

from dataclasses import dataclass

import numpy as np
from scipy.special import logsumexp

from skaggregate.aggregation._base import AlgorithmState, BaseStrategy
from skaggregate.aggregation._loss import BaseLoss
from skaggregate.aggregation._utils import normalize_log_weights
from skaggregate.exceptions import ConfigurationError


@dataclass
class EWAState(AlgorithmState):
    log_weights: np.ndarray | None = None


class EWA(BaseStrategy):
    r"""Exponentially weighted average forecaster (Hedge).

    .. math::

        w_{t+1,k} \propto w_{1,k} \exp\Big(-\eta \sum_{s \le t} \ell_{s,k}\Big)

    The update is multiplicative and is carried out on log-weights, which
    keeps long horizons free of overflow and underflow.

    Parameters
    ----------
    eta : float, default=1.0
        Learning rate, must be positive.
    loss : str | BaseLoss, default="square"
        Loss scoring the experts.
    loss_gradient : bool, default=False
        Score experts with the linearised loss.

    References
    ----------
    .. [1] Vovk, V. (1990). Aggregating strategies. COLT.
    .. [2] Littlestone, N., & Warmuth, M. K. (1994). The weighted majority
       algorithm. Information and Computation, 108(2), 212–261.
    """

    state_class = EWAState
    hyperparameter_names = ("eta",)

    def __init__(
        self,
        eta: float = 1.0,
        loss: str | BaseLoss = "square",
        *,
        loss_gradient: bool = False,
    ):
        super().__init__(loss, loss_gradient=loss_gradient)
        if not eta > 0:
            raise ConfigurationError(f"eta must be positive, got {eta}")
        self.eta = float(eta)

    def _init_state(self, state: EWAState) -> None:
        with np.errstate(divide="ignore"):
            state.log_weights = np.log(state.weights)

    def _exponential_update(self, state: EWAState, expert_losses: np.ndarray) -> None:
        log_w = state.log_weights - self.eta * expert_losses
        state.log_weights = log_w - logsumexp(log_w)
        state.weights = normalize_log_weights(state.log_weights)

    def _update(self, state, x, y, prediction, prediction_loss, expert_losses):
        self._exponential_update(state, expert_losses)


class FixedShare(EWA):
    r"""Fixed share: EWA followed by a mix toward the uniform distribution.

    .. math::

        w_{t+1} = (1 - \alpha)\, v_{t+1} + \alpha / K

    where :math:`v_{t+1}` is the EWA update of :math:`w_t`. Redistributing
    mass bounds the regret against a sequence of experts that switches over
    time.

    Parameters
    ----------
    eta : float, default=1.0
        Learning rate, must be positive.
    alpha : float, default=0.01
        Sharing rate in ``[0, 1]``. ``alpha=0`` recovers EWA.

    References
    ----------
    .. [1] Herbster, M., & Warmuth, M. K. (1998). Tracking the best expert.
       Machine Learning, 32(2), 151–178.
    """

    hyperparameter_names = ("eta", "alpha")

    def __init__(
        self,
        eta: float = 1.0,
        alpha: float = 0.01,
        loss: str | BaseLoss = "square",
        *,
        loss_gradient: bool = False,
    ):
        super().__init__(eta, loss, loss_gradient=loss_gradient)
        if not 0.0 <= alpha <= 1.0:
            raise ConfigurationError(f"alpha must lie in [0, 1], got {alpha}")
        self.alpha = float(alpha)

    def _update(self, state, x, y, prediction, prediction_loss, expert_losses):
        self._exponential_update(state, expert_losses)
        if self.alpha > 0:
            n = state.n_experts
            state.weights = (1.0 - self.alpha) * state.weights + self.alpha / n
            state.log_weights = np.log(state.weights)
