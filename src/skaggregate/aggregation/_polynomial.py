"""Aggregation rules with per-expert adaptive learning rates.

All rules here work on the instantaneous regrets
``r_{t,k} = l(aggregate) - l(expert k)`` and tune one rate per expert from the
experts' own regret history, so no global learning rate is required.

References
----------
.. [1] Gaillard, P., Stoltz, G., & van Erven, T. (2014). A second-order bound
   with excess losses. COLT.
.. [2] Wintenberger, O. (2017). Optimal learning with Bernstein online
   aggregation. Machine Learning, 106(1), 119–141.
.. [3] Cesa-Bianchi, N., Mansour, Y., & Stoltz, G. (2007). Improved
   second-order bounds for prediction with expert advice. Machine Learning.
"""

from dataclasses import dataclass

import numpy as np

from skaggregate.aggregation._base import AlgorithmState, BaseStrategy
from skaggregate.aggregation._learning_rate import adaptive_rates
from skaggregate.aggregation._utils import normalize_log_weights, normalize_weights


@dataclass
class PolynomialState(AlgorithmState):
    """State shared by the second-order rules.

    Attributes
    ----------
    regret : ndarray of shape (n_experts,)
        Cumulative regret ``R_k`` against each expert.
    sq_regret : ndarray of shape (n_experts,)
        Cumulative squared regret.
    eta : ndarray of shape (n_experts,)
        Current per-expert learning rates.
    loss_bound : float
        Largest absolute instantaneous regret seen so far.
    potential : ndarray of shape (n_experts,)
        Rule-specific cumulative term (log-potential for MLprod, regularised
        regret for BOA).
    """

    regret: np.ndarray | None = None
    sq_regret: np.ndarray | None = None
    eta: np.ndarray | None = None
    loss_bound: float = 0.0
    potential: np.ndarray | None = None


class _SecondOrderStrategy(BaseStrategy):
    state_class = PolynomialState

    def _initial_eta(self, n_experts: int) -> np.ndarray:
        return np.zeros(n_experts, dtype=float)

    def _init_state(self, state: PolynomialState) -> None:
        n = state.n_experts
        state.regret = np.zeros(n, dtype=float)
        state.sq_regret = np.zeros(n, dtype=float)
        state.potential = np.zeros(n, dtype=float)
        state.eta = self._initial_eta(n)

    def _log_prior(self, state: PolynomialState) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return np.log(state.initial_weights)

    def _update(self, state, x, y, prediction, prediction_loss, expert_losses):
        r = prediction_loss - expert_losses
        state.regret = state.regret + r
        state.sq_regret = state.sq_regret + r**2
        state.loss_bound = max(state.loss_bound, float(np.max(np.abs(r))))
        self._reweight(state, r)

    def _reweight(self, state: PolynomialState, r: np.ndarray) -> None:
        raise NotImplementedError


class MLpol(_SecondOrderStrategy):
    r"""Polynomially weighted average with multiple learning rates.

    .. math::

        \eta_{t,k} = \Big(\sum_{s \le t} r_{s,k}^2\Big)^{-1}, \qquad
        w_{t+1,k} \propto \eta_{t,k} (R_{t,k})_+

    The weights are uniform as long as no expert has a positive cumulative
    regret.
    """

    def _initial_eta(self, n_experts):
        return np.full(n_experts, np.inf)

    def _reweight(self, state, r):
        state.eta = np.divide(
            1.0,
            state.sq_regret,
            out=np.full(state.n_experts, np.inf),
            where=state.sq_regret > 0,
        )
        positive = np.maximum(state.regret, 0.0)
        active = positive > 0
        if not np.any(active):
            state.weights = np.full(state.n_experts, 1.0 / state.n_experts)
            return
        w = np.zeros(state.n_experts, dtype=float)
        w[active] = state.eta[active] * positive[active]
        state.weights = normalize_weights(w)


class MLprod(_SecondOrderStrategy):
    r"""Prod with multiple adaptive learning rates.

    .. math::

        L_{t,k} = \frac{\eta_{t,k}}{\eta_{t-1,k}}
                  \big(L_{t-1,k} + \log(1 + \eta_{t-1,k} r_{t,k})\big), \qquad
        w_{t+1,k} \propto \eta_{t,k} e^{L_{t,k}}

    with :math:`\eta_{t,k} = \min(1/(2B_t), \sqrt{\log K/(1+\sum_s r_{s,k}^2)})`.
    The previous rate is capped by :math:`1/(2B_t)` so that the logarithm
    stays defined when the regret range grows.
    """

    def _initial_eta(self, n_experts):
        return np.full(n_experts, np.sqrt(np.log(n_experts)))

    def _reweight(self, state, r):
        if state.loss_bound <= 0:
            return
        eta_prev = np.minimum(state.eta, 1.0 / (2.0 * state.loss_bound))
        eta = adaptive_rates(
            1.0 + state.sq_regret, state.loss_bound, state.n_experts, 2.0
        )
        state.potential = (eta / eta_prev) * (
            state.potential + np.log1p(eta_prev * r)
        )
        state.eta = eta
        state.weights = normalize_log_weights(
            self._log_prior(state) + np.log(eta) + state.potential
        )


class MLewa(_SecondOrderStrategy):
    r"""Exponentially weighted average with multiple adaptive learning rates.

    .. math::

        w_{t+1,k} \propto \exp(\eta_{t,k} R_{t,k}), \qquad
        \eta_{t,k} = \min(1/B_t, \sqrt{\log K / \textstyle\sum_s r_{s,k}^2})
    """

    def _reweight(self, state, r):
        if state.loss_bound <= 0:
            return
        state.eta = adaptive_rates(
            state.sq_regret, state.loss_bound, state.n_experts, 1.0
        )
        state.weights = normalize_log_weights(
            self._log_prior(state) + state.eta * state.regret
        )


class BOA(_SecondOrderStrategy):
    r"""Bernstein online aggregation.

    .. math::

        L_{t,k} = L_{t-1,k} + r_{t,k} - \eta_{t-1,k} r_{t,k}^2, \qquad
        w_{t+1,k} \propto w_{1,k}\, \eta_{t,k} e^{\eta_{t,k} L_{t,k}}

    with :math:`\eta_{t,k} = \min(1/(2B_t), \sqrt{\log K/\sum_s r_{s,k}^2})`.
    The second-order correction makes the weights concentrate fast on an
    expert with small excess loss.
    """

    def _reweight(self, state, r):
        state.potential = state.potential + r - state.eta * r**2
        if state.loss_bound <= 0:
            return
        state.eta = adaptive_rates(
            state.sq_regret, state.loss_bound, state.n_experts, 2.0
        )
        state.weights = normalize_log_weights(
            self._log_prior(state) + np.log(state.eta) + state.eta * state.potential
        )
