import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar

import numpy as np
import numpy.typing as npt

from skaggregate.aggregation._loss import BaseLoss, make_loss
from skaggregate.aggregation._utils import (
    check_observation,
    check_row,
    normalize_weights,
)
from skaggregate.exceptions import (
    ConfigurationError,
    DimensionMismatch,
    NumericDegeneracy,
)
from skaggregate.utils.tools import input_to_array


@dataclass
class AlgorithmState:
    """Checkpoint of an aggregation rule after `t` steps.

    Attributes
    ----------
    weights : ndarray of shape (n_experts,)
        Weights used for the next prediction.
    initial_weights : ndarray of shape (n_experts,)
        Prior weights the rule started from.
    n_experts : int
        Number of experts.
    t : int
        Number of steps consumed.
    expert_loss : ndarray of shape (n_experts,)
        Cumulative loss of each expert.
    loss : float
        Cumulative loss of the aggregated prediction.
    hyperparameters : dict
        Current hyperparameter values, possibly chosen online.
    events : list of str
        Flags raised during the last step.
    """

    weights: np.ndarray
    initial_weights: np.ndarray
    n_experts: int
    t: int = 0
    expert_loss: np.ndarray | None = None
    loss: float = 0.0
    hyperparameters: dict = field(default_factory=dict)
    events: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.expert_loss is None:
            self.expert_loss = np.zeros(self.n_experts, dtype=float)


class BaseStrategy(ABC):
    """Aggregation rule consuming one ``(expert row, observation)`` pair per step.

    Strategies hold configuration only: all learned quantities live in the
    :class:`AlgorithmState` returned by :meth:`init` and :meth:`step`, which
    never mutates the state it receives.

    Parameters
    ----------
    loss : str | BaseLoss | callable, default="square"
        Loss scoring forecasts against observations.
    loss_gradient : bool, default=False
        If True, experts and aggregate are scored with the linearised loss
        ``g_t * forecast`` where ``g_t`` is the loss gradient at the aggregated
        prediction ("gradient trick").
    """

    state_class: ClassVar[type[AlgorithmState]] = AlgorithmState
    hyperparameter_names: ClassVar[tuple[str, ...]] = ()
    simplex: bool = True

    def __init__(
        self, loss: "str | BaseLoss" = "square", *, loss_gradient: bool = False
    ):
        self.loss = make_loss(loss)
        self.loss_gradient = loss_gradient

    @property
    def hyperparameters(self) -> dict:
        return {name: getattr(self, name) for name in self.hyperparameter_names}

    def _initial_weights(
        self, n_experts: int, initial_weights: npt.ArrayLike | None
    ) -> np.ndarray:
        if n_experts == 1:
            return np.ones(1)
        w0 = input_to_array(
            initial_weights,
            n_experts=n_experts,
            fill_value=1.0 / n_experts,
            name="initial_weights",
        )
        if not np.all(np.isfinite(w0)):
            raise ConfigurationError("initial_weights must be finite")
        if self.simplex:
            if np.any(w0 < 0) or np.sum(w0) <= 0:
                raise ConfigurationError(
                    "initial_weights must be non-negative with a positive sum"
                )
            w0 = normalize_weights(w0)
        return w0

    def init(
        self, n_experts: int, initial_weights: npt.ArrayLike | None = None
    ) -> AlgorithmState:
        """Create the state before the first observation."""
        if n_experts < 1:
            raise DimensionMismatch("at least one expert is required")
        w0 = self._initial_weights(n_experts, initial_weights)
        state = self.state_class(
            weights=w0.copy(),
            initial_weights=w0,
            n_experts=n_experts,
            hyperparameters=self.hyperparameters,
        )
        self._init_state(state)
        if n_experts == 1:
            # single expert is passed through unchanged
            state.weights = np.ones(1)
        return state

    def _init_state(self, state: AlgorithmState) -> None:
        """Allocate rule-specific statistics. Default is no-op."""

    def step(
        self, state: AlgorithmState, x: npt.ArrayLike, y: float
    ) -> tuple[AlgorithmState, float]:
        """Predict with the current weights, then learn from `y`.

        Parameters
        ----------
        state : AlgorithmState
            State after the previous step. Left untouched.
        x : array-like of shape (n_experts,)
            Expert forecasts for this step.
        y : float
            Observation revealed after the prediction.

        Returns
        -------
        new_state : AlgorithmState
            State after learning from `y`.
        prediction : float
            ``state.weights @ x``, computed before `y` is used.
        """
        x = check_row(x, state.n_experts)
        y = check_observation(y)

        new_state = copy.deepcopy(state)
        new_state.events = []
        prediction = float(np.dot(new_state.weights, x))

        expert_losses = np.asarray(self.loss.loss(x, y), dtype=float)
        prediction_loss = float(self.loss.loss(prediction, y))
        if self.loss.is_degenerate(y):
            new_state.events.append("percentage_fallback")
        new_state.expert_loss = new_state.expert_loss + expert_losses
        new_state.loss += prediction_loss

        if new_state.n_experts > 1:
            if self.loss_gradient:
                g = float(self.loss.gradient(prediction, y))
                scored_prediction, scored_experts = g * prediction, g * x
            else:
                scored_prediction, scored_experts = prediction_loss, expert_losses
            self._update(new_state, x, y, prediction, scored_prediction, scored_experts)
            if not np.all(np.isfinite(new_state.weights)):
                raise NumericDegeneracy(
                    f"{type(self).__name__} produced non-finite weights at step "
                    f"{state.t + 1}"
                )

        new_state.t += 1
        return new_state, prediction

    @abstractmethod
    def _update(
        self,
        state: AlgorithmState,
        x: np.ndarray,
        y: float,
        prediction: float,
        prediction_loss: float,
        expert_losses: np.ndarray,
    ) -> None:
        """Update `state` in place from the scored losses of this step.

        ``state.t`` still counts the steps before the current one.
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v!r}" for k, v in self.hyperparameters.items())
        return f"{type(self).__name__}({params})"
