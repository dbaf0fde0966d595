"""Online calibration of hyperparameters with shadow instances."""

from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np
from sklearn.model_selection import ParameterGrid
from sklearn.utils.parallel import Parallel, delayed

from skaggregate.aggregation._base import AlgorithmState, BaseStrategy
from skaggregate.aggregation._learning_rate import compute_ewa_learning_rate
from skaggregate.aggregation._loss import BaseLoss
from skaggregate.aggregation._mixins import CalibrationMode
from skaggregate.aggregation._utils import normalize_log_weights, one_hot
from skaggregate.exceptions import ConfigurationError, InvalidCalibrationGrid

_DOMAINS: dict[str, Callable[[float], bool]] = {
    "eta": lambda v: v > 0,
    "alpha": lambda v: 0 <= v <= 1,
    "lambda_reg": lambda v: v >= 0,
}


@dataclass
class CalibrationState(AlgorithmState):
    """State of a calibrated rule.

    Attributes
    ----------
    shadows : list of AlgorithmState
        One state per candidate, in grid order.
    shadow_loss : ndarray of shape (n_candidates,)
        Cumulative loss of each shadow's own predictions.
    meta_weights : ndarray of shape (n_candidates,)
        Weights over the shadows used for the next prediction.
    loss_bound : float
        Largest instantaneous shadow loss seen so far.
    """

    shadows: list = field(default_factory=list)
    shadow_loss: np.ndarray | None = None
    meta_weights: np.ndarray | None = None
    loss_bound: float = 0.0


class ParameterCalibrator(BaseStrategy):
    r"""Tune the free hyperparameters of a rule online.

    One shadow instance of `factory` runs per candidate of `param_grid`, in
    lock-step with the data. With ``calibration="meta"`` the shadows are
    themselves aggregated by an EWA over their cumulative losses with the
    anytime rate :math:`\sqrt{8 \log M / t} / B_t`, and the played weights are
    the corresponding mixture of the shadows' weights. With
    ``calibration="select"`` the weights of the shadow with the lowest
    cumulative loss are played (ties go to the first candidate).

    Candidate selection for step ``t`` only uses losses revealed before ``t``.

    Parameters
    ----------
    factory : callable
        Strategy class (or any callable) building a shadow from keyword
        hyperparameters, `loss` and `loss_gradient`.
    param_grid : dict of str to list
        Candidate values, expanded with :class:`sklearn.model_selection.ParameterGrid`.
    fixed_params : dict, optional
        Hyperparameters and options shared by every shadow.
    calibration : {"meta", "select"}, default="meta"
        How shadows are combined.
    n_jobs : int, optional
        Number of threads stepping the shadows. ``None`` steps them in turn.
    loss : str | BaseLoss, default="square"
        Loss scoring the shadows and the experts.
    loss_gradient : bool, default=False
        Passed on to the shadows.

    Raises
    ------
    InvalidCalibrationGrid
        If the grid is empty, names an unknown hyperparameter or holds an
        out-of-domain value.
    """

    state_class = CalibrationState

    def __init__(
        self,
        factory: Callable[..., BaseStrategy],
        param_grid: dict[str, list],
        fixed_params: dict | None = None,
        calibration: CalibrationMode | str = CalibrationMode.META,
        n_jobs: int | None = None,
        loss: str | BaseLoss = "square",
        *,
        loss_gradient: bool = False,
    ):
        super().__init__(loss, loss_gradient=loss_gradient)
        self.factory = factory
        self.param_grid = param_grid
        self.fixed_params = dict(fixed_params or {})
        try:
            self.calibration = CalibrationMode.from_name(calibration)
        except KeyError:
            raise ConfigurationError(
                f"Unknown calibration {calibration!r}; use 'meta' or 'select'"
            ) from None
        self.n_jobs = n_jobs
        self.candidates = self._build_candidates()
        self.strategies = [
            factory(
                **self.fixed_params,
                **candidate,
                loss=self.loss,
                loss_gradient=loss_gradient,
            )
            for candidate in self.candidates
        ]
        self.simplex = all(s.simplex for s in self.strategies)

    def _build_candidates(self) -> list[dict]:
        if not self.param_grid or any(
            len(np.atleast_1d(values)) == 0 for values in self.param_grid.values()
        ):
            raise InvalidCalibrationGrid("calibration grid is empty")
        names = getattr(self.factory, "hyperparameter_names", tuple(self.param_grid))
        grid: dict[str, list[float]] = {}
        for name, values in self.param_grid.items():
            if name not in names:
                raise InvalidCalibrationGrid(
                    f"{name!r} is not a hyperparameter of {self.factory.__name__}"
                )
            try:
                grid[name] = [float(v) for v in np.atleast_1d(values)]
            except (TypeError, ValueError):
                raise InvalidCalibrationGrid(
                    f"candidates for {name!r} must be numbers, got {values!r}"
                ) from None
            check = _DOMAINS.get(name)
            for value in grid[name]:
                if not np.isfinite(value) or (check is not None and not check(value)):
                    raise InvalidCalibrationGrid(
                        f"candidate {name}={value} is outside the admissible domain"
                    )
        return list(ParameterGrid(grid))

    @property
    def hyperparameters(self) -> dict:
        return {**self.fixed_params, **self.candidates[0]}

    def _init_state(self, state: CalibrationState) -> None:
        m = len(self.strategies)
        state.shadows = [
            s.init(state.n_experts, state.initial_weights) for s in self.strategies
        ]
        state.shadow_loss = np.zeros(m, dtype=float)
        state.meta_weights = np.full(m, 1.0 / m)
        state.weights = self._mix(state)

    def _mix(self, state: CalibrationState) -> np.ndarray:
        W = np.vstack([s.weights for s in state.shadows])
        return state.meta_weights @ W

    def _step_shadows(
        self, shadows: list[AlgorithmState], x: np.ndarray, y: float
    ) -> list[tuple[AlgorithmState, float]]:
        if self.n_jobs in (None, 1):
            return [s.step(st, x, y) for s, st in zip(self.strategies, shadows)]
        return Parallel(n_jobs=self.n_jobs, backend="threading")(
            delayed(s.step)(st, x, y) for s, st in zip(self.strategies, shadows)
        )

    def _update(self, state, x, y, prediction, prediction_loss, expert_losses):
        results = self._step_shadows(state.shadows, x, y)
        state.shadows = [new_shadow for new_shadow, _ in results]
        shadow_predictions = np.array([pred for _, pred in results])
        instant = np.asarray(self.loss.loss(shadow_predictions, y), dtype=float)
        state.shadow_loss = state.shadow_loss + instant
        state.loss_bound = max(state.loss_bound, float(np.max(np.abs(instant))))

        match self.calibration:
            case CalibrationMode.META:
                eta = compute_ewa_learning_rate(
                    state.t, len(self.strategies), state.loss_bound
                )
                state.meta_weights = normalize_log_weights(-eta * state.shadow_loss)
            case CalibrationMode.SELECT:
                best = int(np.argmin(state.shadow_loss))
                state.meta_weights = one_hot(best, len(self.strategies))

        state.weights = self._mix(state)
        state.hyperparameters = {
            **self.fixed_params,
            **self.candidates[int(np.argmax(state.meta_weights))],
        }
        for shadow in state.shadows:
            for event in shadow.events:
                if event not in state.events:
                    state.events.append(event)

    def __repr__(self) -> str:
        return (
            f"ParameterCalibrator({self.factory.__name__}, "
            f"n_candidates={len(self.candidates)}, calibration={self.calibration!s})"
        )
