# _descent.py
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from skaggregate.aggregation._base import AlgorithmState, BaseStrategy
from skaggregate.aggregation._learning_rate import scheduled_rate
from skaggregate.aggregation._loss import BaseLoss
from skaggregate.aggregation._mirror_maps import (
    BaseMirrorMap,
    EntropyMirrorMap,
    EuclideanMirrorMap,
)
from skaggregate.aggregation._mixins import Constraint, Geometry, Schedule, UpdateMode
from skaggregate.aggregation._projection import (
    BaseProjector,
    IdentityProjector,
    SimplexProjector,
)
from skaggregate.exceptions import ConfigurationError


class MirrorStep:
    r"""Stateless first-order step shared by OMD and FTRL.

    - **OMD** takes a proximal step around the current weights:
      :math:`w_{t+1} = \Pi(\nabla\psi^*(\nabla\psi(w_t) - \eta_t g_t))`
    - **FTRL** restarts from the prior on the cumulative gradient:
      :math:`w_{t+1} = \Pi(\nabla\psi^*(\nabla\psi(w_1) - \eta_t \sum_{s \le t} g_s))`

    References
    ----------
    .. [1] McMahan, H. B. (2011). "Follow-the-Regularized-Leader and Mirror
           Descent: Equivalence Theorems and L1 Regularization". PMLR.
    """

    def __init__(
        self,
        mirror_map: BaseMirrorMap,
        projector: BaseProjector,
        mode: UpdateMode = UpdateMode.OMD,
    ):
        self.map = mirror_map
        self.projector = projector
        self.mode = mode

    def _solve_argmin_lin_plus_reg(
        self, lin_vec: np.ndarray, reg_center: np.ndarray
    ) -> np.ndarray:
        """
        Expectation: lin_vec is already multiplied by eta_t.
        Solves dual: z = - lin_vec + grad_psi(reg_center), then x = grad_psi_star(z);
        follow with geometry-specific normalization & external projector.
        """
        z = -lin_vec + self.map.grad_psi(reg_center)
        x = self.map.grad_psi_star(z)
        x = self.map.project_geom(x)
        return self.projector.project(x)

    def __call__(
        self,
        weights: np.ndarray,
        initial_weights: np.ndarray,
        gradient: np.ndarray,
        gradient_sum: np.ndarray,
        eta_t: float,
    ) -> np.ndarray:
        match self.mode:
            case UpdateMode.OMD:
                return self._solve_argmin_lin_plus_reg(eta_t * gradient, weights)
            case UpdateMode.FTRL:
                return self._solve_argmin_lin_plus_reg(
                    eta_t * gradient_sum, initial_weights
                )


@dataclass
class DescentState(AlgorithmState):
    gradient_sum: np.ndarray | None = None
    gradient_bound: float = 0.0


class OGD(BaseStrategy):
    r"""Online gradient descent on the aggregation weights.

    The gradient of the loss with respect to the weights is
    :math:`g_t = \partial_{\hat y} \ell(\hat y_t, y_t)\, x_t`.

    Parameters
    ----------
    eta : float, default=0.1
        Base learning rate.
    constraint : {"simplex", "none"}, default="simplex"
        Keep the weights on the probability simplex, or leave them free
        (linear combination of the experts).
    geometry : {"euclidean", "entropy"}, default="euclidean"
        Mirror map. ``"euclidean"`` is projected gradient descent,
        ``"entropy"`` is exponentiated gradient and requires the simplex.
    update_mode : {"omd", "ftrl"}, default="omd"
        Proximal (mirror descent) or follow-the-regularized-leader update.
    schedule : {"sqrt", "constant"}, default="sqrt"
        ``eta / sqrt(t)`` or a constant rate.
    gradient_scaling : bool, default=False
        Divide the rate by the largest gradient sup-norm seen so far, so that
        `eta` is a step in weight units whatever the scale of the data.
    loss : str | BaseLoss, default="square"
        Loss whose gradient drives the update.

    References
    ----------
    .. [1] Zinkevich, M. (2003). Online convex programming and generalized
       infinitesimal gradient ascent. ICML.
    .. [2] Kivinen, J., & Warmuth, M. K. (1997). Exponentiated gradient versus
       gradient descent for linear predictors. Information and Computation.
    """

    state_class = DescentState
    hyperparameter_names = ("eta",)

    def __init__(
        self,
        eta: float = 0.1,
        constraint: Constraint | str = Constraint.SIMPLEX,
        geometry: Geometry | str = Geometry.EUCLIDEAN,
        update_mode: UpdateMode | str = UpdateMode.OMD,
        schedule: Schedule | str = Schedule.SQRT,
        loss: str | BaseLoss = "square",
        *,
        loss_gradient: bool = False,
        gradient_scaling: bool = False,
    ):
        super().__init__(loss, loss_gradient=loss_gradient)
        if not eta > 0:
            raise ConfigurationError(f"eta must be positive, got {eta}")
        self.eta = float(eta)
        self.gradient_scaling = gradient_scaling
        try:
            self.constraint = Constraint.from_name(constraint)
            self.geometry = Geometry.from_name(geometry)
            self.update_mode = UpdateMode.from_name(update_mode)
            self.schedule = Schedule.from_name(schedule)
        except KeyError as exc:
            raise ConfigurationError(f"Unknown OGD option {exc}") from None
        self.simplex = self.constraint == Constraint.SIMPLEX

        match self.geometry:
            case Geometry.EUCLIDEAN:
                mirror_map = EuclideanMirrorMap()
            case Geometry.ENTROPY:
                mirror_map = EntropyMirrorMap()
        if mirror_map.requires_simplex and not self.simplex:
            raise ConfigurationError(
                "the entropy geometry requires constraint='simplex'"
            )
        projector = SimplexProjector() if self.simplex else IdentityProjector()
        self._mirror_step = MirrorStep(mirror_map, projector, self.update_mode)

    def _init_state(self, state: DescentState) -> None:
        state.gradient_sum = np.zeros(state.n_experts, dtype=float)

    def _update(self, state, x, y, prediction, prediction_loss, expert_losses):
        gradient = float(self.loss.gradient(prediction, y)) * x
        state.gradient_sum = state.gradient_sum + gradient
        eta_t = scheduled_rate(self.eta, state.t, self.schedule)
        if self.gradient_scaling:
            state.gradient_bound = max(
                state.gradient_bound, float(np.max(np.abs(gradient)))
            )
            if state.gradient_bound > 0:
                eta_t /= state.gradient_bound
        state.weights = self._mirror_step(
            state.weights,
            state.initial_weights,
            gradient,
            state.gradient_sum,
            eta_t,
        )
