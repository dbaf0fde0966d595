"""Sequential mixture of expert forecasts."""

import copy
import warnings
from typing import Any

import numpy as np
import numpy.typing as npt
import pandas as pd
from sklearn.base import BaseEstimator, RegressorMixin
from sklearn.utils._param_validation import InvalidParameterError
from sklearn.utils.validation import check_is_fitted, validate_data

from skaggregate.aggregation._base import AlgorithmState, BaseStrategy
from skaggregate.aggregation._calibration import ParameterCalibrator
from skaggregate.aggregation._descent import OGD
from skaggregate.aggregation._ewa import EWA, FixedShare
from skaggregate.aggregation._learning_rate import default_grid
from skaggregate.aggregation._loss import BaseLoss, make_loss
from skaggregate.aggregation._mixins import (
    MODEL_ALIASES,
    CalibrationMode,
    Constraint,
    Geometry,
    MixtureParameterConstraintsMixin,
    ModelKind,
    Schedule,
    UpdateMode,
)
from skaggregate.aggregation._polynomial import BOA, MLewa, MLpol, MLprod
from skaggregate.aggregation._ridge import Ridge
from skaggregate.exceptions import (
    ConfigurationError,
    DimensionMismatch,
    InvalidCalibrationGrid,
    NumericDegeneracy,
    UnknownModelKind,
)

STRATEGIES: dict[ModelKind, type[BaseStrategy]] = {
    ModelKind.EWA: EWA,
    ModelKind.OGD: OGD,
    ModelKind.RIDGE: Ridge,
    ModelKind.MLPOL: MLpol,
    ModelKind.MLPROD: MLprod,
    ModelKind.MLEWA: MLewa,
    ModelKind.BOA: BOA,
    ModelKind.FIXED_SHARE: FixedShare,
}

_EVENT_MESSAGES = {
    "percentage_fallback": (
        "Observation equal to 0 under the percentage loss; the step was scored "
        "with the absolute loss."
    ),
    "singular_moment": (
        "Singular second-moment matrix in the ridge update; a small multiple of "
        "the identity was added."
    ),
    "step_failed": "Step failed and was skipped; the previous state is kept.",
}


class MixtureHistory:
    """Append-only record of a :class:`Mixture` run.

    Arrays returned by the properties are fresh copies: mutating them never
    alters the record.
    """

    def __init__(self, expert_names: list[str]):
        self.expert_names = list(expert_names)
        self._predictions: list[float] = []
        self._losses: list[float] = []
        self._expert_losses: list[np.ndarray] = []
        self._weights: list[np.ndarray] = []
        self._events: list[tuple[str, ...]] = []

    def append(
        self,
        prediction: float,
        loss: float,
        expert_losses: np.ndarray,
        weights: np.ndarray,
        events: list[str] | tuple[str, ...] = (),
    ) -> None:
        self._predictions.append(float(prediction))
        self._losses.append(float(loss))
        self._expert_losses.append(np.array(expert_losses, dtype=float))
        self._weights.append(np.array(weights, dtype=float))
        self._events.append(tuple(events))

    def __len__(self) -> int:
        return len(self._predictions)

    def _stack(self, rows: list[np.ndarray]) -> np.ndarray:
        if not rows:
            return np.empty((0, len(self.expert_names)), dtype=float)
        return np.vstack(rows)

    @property
    def predictions(self) -> np.ndarray:
        return np.array(self._predictions, dtype=float)

    @property
    def losses(self) -> np.ndarray:
        return np.array(self._losses, dtype=float)

    @property
    def expert_losses(self) -> np.ndarray:
        return self._stack(self._expert_losses)

    @property
    def weights(self) -> np.ndarray:
        return self._stack(self._weights)

    @property
    def events(self) -> list[tuple[str, ...]]:
        return list(self._events)

    def to_frame(self) -> pd.DataFrame:
        """History as a DataFrame with one row per step.

        Columns are ``prediction``, ``loss``, ``events``, then ``weight_<expert>``
        and ``loss_<expert>`` for each expert.
        """
        frame = pd.DataFrame(
            {
                "prediction": self.predictions,
                "loss": self.losses,
                "events": [",".join(ev) for ev in self._events],
            }
        )
        weights = pd.DataFrame(
            self.weights, columns=[f"weight_{name}" for name in self.expert_names]
        )
        losses = pd.DataFrame(
            self.expert_losses, columns=[f"loss_{name}" for name in self.expert_names]
        )
        return pd.concat([frame, weights, losses], axis=1)


class Mixture(RegressorMixin, MixtureParameterConstraintsMixin, BaseEstimator):
    r"""Online aggregation of expert forecasts.

    At each step the mixture predicts :math:`\hat y_t = w_{t-1}^\top x_t` from
    the expert forecasts :math:`x_t`, then observes :math:`y_t`, scores the
    prediction and the experts and updates the weights with the chosen rule.
    The observation of a step is never used before its prediction is emitted.

    When a hyperparameter of the rule (``eta``, ``alpha`` or ``lambda_reg``) is
    left to ``None``, it is calibrated online by a :class:`ParameterCalibrator`
    over `param_grid` (or a default grid).

    Fitting
    -------
    - :meth:`partial_fit` consumes exactly one row and is transactional: if
      the step fails, neither the state nor the history changes.
    - :meth:`fit` replays :meth:`partial_fit` row by row. With
      ``strict=False`` a failing row only fails that step (the history records
      a ``nan`` prediction and a ``"step_failed"`` event); with
      ``strict=True`` the first failure aborts the run.

    Parameters
    ----------
    model : str | ModelKind, default="MLpol"
        Aggregation rule: ``"EWA"``, ``"OGD"``, ``"Ridge"``, ``"MLpol"``,
        ``"MLprod"``, ``"MLewa"``, ``"BOA"`` or ``"FixedShare"``.
    loss : str | BaseLoss | callable, default="square"
        ``"square"``, ``"absolute"``, ``"percentage"``, ``"pinball"``, a
        :class:`BaseLoss` or an autograd-compatible ``fn(pred, obs)``.
    quantile : float, default=0.5
        Level of the pinball loss.
    loss_gradient : bool, default=False
        Score experts with the linearised loss ``g_t x_{t,k}``.
    eta : float, optional
        Learning rate of EWA, FixedShare and OGD. Calibrated when None.
    alpha : float, optional
        Sharing rate of FixedShare. Calibrated when None.
    lambda_reg : float, optional
        Regularisation of Ridge. Calibrated when None.
    param_grid : dict, optional
        Candidate values for the hyperparameters left to None, overriding the
        defaults of :func:`default_grid`. Naming a hyperparameter that is also
        set explicitly raises :class:`InvalidCalibrationGrid`. With the default
        OGD grid, the OGD steps are divided by the largest gradient seen so
        far (``gradient_scaling=True``).
    calibration : {"meta", "select"}, default="meta"
        How calibration shadows are combined.
    constraint, geometry, update_mode, schedule : str
        Options of the OGD rule.
    recompute_every : int, default=100
        Period of the full inverse recomputation of Ridge.
    initial_weights : array-like of shape (n_experts,), optional
        Prior weights. Uniform when None.
    initial_state : AlgorithmState, optional
        Checkpoint to resume from, e.g. ``other.state_``.
    zero_division : {"absolute", "raise"}, default="absolute"
        Percentage loss policy for observations equal to 0.
    strict : bool, default=False
        Abort :meth:`fit` on the first failing row.
    warm_start : bool, default=False
        If True, :meth:`fit` continues from the current state and history.
    n_jobs : int, optional
        Threads stepping calibration shadows.

    Attributes
    ----------
    weights_ : ndarray of shape (n_experts,)
        Weights for the next prediction.
    state_ : AlgorithmState
        Full checkpoint of the rule.
    history_ : MixtureHistory
        Prediction, loss and weight record.
    last_prediction_ : float
        Prediction emitted by the last step.
    batch_predictions_ : ndarray of shape (n_samples,)
        Set by ``fit(..., online=False)``: non-causal predictions of the
        final weights.
    loss_ : BaseLoss
        Resolved loss.
    strategy_ : BaseStrategy
        Resolved rule, possibly wrapped in a calibrator.

    Examples
    --------
    >>> import numpy as np
    >>> X = np.array([[1.0, 3.0], [1.0, 3.0], [1.0, 3.0]])
    >>> y = np.array([1.0, 1.0, 1.0])
    >>> model = Mixture(model="EWA", eta=1.0).fit(X, y)
    >>> model.expert_losses_.cumsum(axis=0)[:, 1]
    array([ 4.,  8., 12.])
    """

    def __init__(
        self,
        model: ModelKind | str = ModelKind.MLPOL,
        loss: str | BaseLoss = "square",
        *,
        quantile: float = 0.5,
        loss_gradient: bool = False,
        eta: float | None = None,
        alpha: float | None = None,
        lambda_reg: float | None = None,
        param_grid: dict | None = None,
        calibration: CalibrationMode | str = CalibrationMode.META,
        constraint: Constraint | str = Constraint.SIMPLEX,
        geometry: Geometry | str = Geometry.EUCLIDEAN,
        update_mode: UpdateMode | str = UpdateMode.OMD,
        schedule: Schedule | str = Schedule.SQRT,
        recompute_every: int = 100,
        initial_weights: npt.ArrayLike | None = None,
        initial_state: AlgorithmState | None = None,
        zero_division: str = "absolute",
        strict: bool = False,
        warm_start: bool = False,
        n_jobs: int | None = None,
    ):
        self.model = model
        self.loss = loss
        self.quantile = quantile
        self.loss_gradient = loss_gradient
        self.eta = eta
        self.alpha = alpha
        self.lambda_reg = lambda_reg
        self.param_grid = param_grid
        self.calibration = calibration
        self.constraint = constraint
        self.geometry = geometry
        self.update_mode = update_mode
        self.schedule = schedule
        self.recompute_every = recompute_every
        self.initial_weights = initial_weights
        self.initial_state = initial_state
        self.zero_division = zero_division
        self.strict = strict
        self.warm_start = warm_start
        self.n_jobs = n_jobs

    # history views
    @property
    def predictions_(self) -> np.ndarray:
        return self.history_.predictions

    @property
    def losses_(self) -> np.ndarray:
        return self.history_.losses

    @property
    def expert_losses_(self) -> np.ndarray:
        return self.history_.expert_losses

    @property
    def all_weights_(self) -> np.ndarray:
        """Weights used for each prediction, shape (n_steps, n_experts)."""
        return self.history_.weights

    @property
    def events_(self) -> list[tuple[str, ...]]:
        return self.history_.events

    def _model_kind(self) -> ModelKind:
        try:
            return ModelKind.from_name(self.model, aliases=MODEL_ALIASES)
        except KeyError:
            raise UnknownModelKind(
                f"Unknown model {self.model!r}. Choose one of "
                f"{[k.value for k in ModelKind]}."
            ) from None

    def _strategy_options(self, kind: ModelKind) -> dict[str, Any]:
        match kind:
            case ModelKind.OGD:
                return {
                    "constraint": self.constraint,
                    "geometry": self.geometry,
                    "update_mode": self.update_mode,
                    "schedule": self.schedule,
                }
            case ModelKind.RIDGE:
                return {"recompute_every": self.recompute_every}
            case _:
                return {}

    def _build_strategy(self) -> BaseStrategy:
        """Validate the configuration and build the rule, calibrated if needed.

        Raises
        ------
        ConfigurationError
            On any invalid parameter, with :class:`UnknownModelKind`,
            :class:`UnknownLossKind` and :class:`InvalidCalibrationGrid` as
            specific cases.
        """
        try:
            self._validate_params()
        except InvalidParameterError as exc:
            raise ConfigurationError(str(exc)) from exc

        kind = self._model_kind()
        loss = make_loss(
            self.loss, quantile=self.quantile, zero_division=self.zero_division
        )
        cls = STRATEGIES[kind]
        options = self._strategy_options(kind)
        names = cls.hyperparameter_names
        missing = [n for n in names if getattr(self, n) is None]

        user_grid = dict(self.param_grid) if self.param_grid is not None else {}
        if self.param_grid is not None and not user_grid and missing:
            raise InvalidCalibrationGrid("calibration grid is empty")
        conflicts = sorted(
            n for n in user_grid if n in names and getattr(self, n) is not None
        )
        if conflicts:
            raise InvalidCalibrationGrid(
                f"param_grid cannot calibrate {conflicts}: already set explicitly"
            )
        defaulted = [n for n in missing if n not in user_grid]
        grid = {**default_grid(kind, defaulted), **user_grid}
        if kind == ModelKind.OGD and "eta" in defaulted:
            # default candidates are steps in weight units
            options["gradient_scaling"] = True

        fixed = {n: getattr(self, n) for n in names if n not in grid}
        if not grid:
            return cls(**fixed, **options, loss=loss, loss_gradient=self.loss_gradient)
        return ParameterCalibrator(
            cls,
            grid,
            fixed_params={**fixed, **options},
            calibration=self.calibration,
            n_jobs=self.n_jobs,
            loss=loss,
            loss_gradient=self.loss_gradient,
        )

    def _initialize(self, n_experts: int) -> None:
        strategy = self._build_strategy()
        if self.initial_state is not None:
            state = copy.deepcopy(self.initial_state)
            if not isinstance(state, strategy.state_class):
                raise ConfigurationError(
                    f"initial_state of type {type(state).__name__} cannot resume "
                    f"{strategy!r}"
                )
            if state.n_experts != n_experts:
                raise DimensionMismatch(
                    f"initial_state has {state.n_experts} experts, data has "
                    f"{n_experts}"
                )
        else:
            state = strategy.init(n_experts, self.initial_weights)

        if hasattr(self, "feature_names_in_"):
            names = [str(name) for name in self.feature_names_in_]
        else:
            names = [str(k) for k in range(n_experts)]

        self.strategy_ = strategy
        self.loss_ = strategy.loss
        self.state_ = state
        self.weights_ = state.weights.copy()
        self.history_ = MixtureHistory(names)

    def _reset_state_for_fit(self) -> None:
        for attr in (
            "strategy_",
            "loss_",
            "state_",
            "weights_",
            "history_",
            "last_prediction_",
            "batch_predictions_",
            "n_features_in_",
            "feature_names_in_",
        ):
            if attr in self.__dict__:
                delattr(self, attr)

    def _check_width(self, X: Any) -> None:
        n_features = np.shape(X)[1]
        if hasattr(self, "n_features_in_") and n_features != self.n_features_in_:
            raise DimensionMismatch(
                f"X has {n_features} experts, but the mixture was started with "
                f"{self.n_features_in_}"
            )

    def _warn_events(self, events: list[str] | tuple[str, ...]) -> None:
        for event in events:
            warnings.warn(
                _EVENT_MESSAGES.get(event, event), UserWarning, stacklevel=4
            )

    def _step_row(self, x: np.ndarray, y: float) -> float:
        new_state, prediction = self.strategy_.step(self.state_, x, y)
        self.history_.append(
            prediction=prediction,
            loss=self.loss_.loss(prediction, y),
            expert_losses=self.loss_.loss(x, y),
            weights=self.state_.weights,
            events=new_state.events,
        )
        self._warn_events(new_state.events)
        self.state_ = new_state
        self.weights_ = new_state.weights.copy()
        self.last_prediction_ = prediction
        return prediction

    def _record_failure(self) -> None:
        n = self.state_.n_experts
        self.history_.append(
            prediction=np.nan,
            loss=np.nan,
            expert_losses=np.full(n, np.nan),
            weights=self.state_.weights,
            events=("step_failed",),
        )
        self._warn_events(("step_failed",))

    def partial_fit(self, X: npt.ArrayLike, y: npt.ArrayLike) -> "Mixture":
        """Consume one step: predict from the forecasts, then learn from `y`.

        Parameters
        ----------
        X : array-like of shape (n_experts,) or (1, n_experts)
            Expert forecasts for one step. The number of experts is inferred
            on the first call.
        y : float or array-like of shape (1,)
            Observation of the step.

        Returns
        -------
        self : Mixture
            The prediction is available as ``last_prediction_``.

        Raises
        ------
        DimensionMismatch
            If more than one row is given or the number of experts changes.
        NumericDegeneracy
            If the forecasts or the observation are not finite, or no fallback
            exists for a degenerate loss.
        """
        first_call = not hasattr(self, "state_")
        if first_call:
            self._build_strategy()

        if not hasattr(X, "columns"):
            X = np.asarray(X, dtype=float)
            if X.ndim == 1:
                X = X.reshape(1, -1)
        if np.ndim(X) != 2 or np.shape(X)[0] != 1:
            raise DimensionMismatch(
                "partial_fit expects a single row (one step). Use fit for "
                "multiple rows."
            )
        self._check_width(X)
        X = validate_data(
            self, X=X, reset=first_call, dtype=float, ensure_all_finite=False
        )

        if first_call:
            self._initialize(X.shape[1])
            try:
                self._step_row(X[0], y)
            except Exception:
                self._reset_state_for_fit()
                raise
        else:
            self._step_row(X[0], y)
        return self

    def step(self, X: npt.ArrayLike, y: npt.ArrayLike) -> float:
        """Same as :meth:`partial_fit` but return the emitted prediction."""
        return self.partial_fit(X, y).last_prediction_

    def fit(
        self, X: npt.ArrayLike, y: npt.ArrayLike, online: bool = True
    ) -> "Mixture":
        """Replay :meth:`partial_fit` over the rows of `X` in order.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_experts)
            Expert forecasts. DataFrame columns name the experts.
        y : array-like of shape (n_samples,)
            Observations aligned with the rows of `X`.
        online : bool, default=True
            If False, the same sequential update runs and the final weights
            are applied to the whole of `X` in ``batch_predictions_``. These
            predictions use future observations and only serve hindsight
            analysis.

        Returns
        -------
        self : Mixture
        """
        if not self.warm_start:
            self._reset_state_for_fit()
        self._build_strategy()

        first_call = not hasattr(self, "state_")
        if not first_call and np.ndim(X) == 2:
            self._check_width(X)
        X_arr = validate_data(
            self, X=X, reset=first_call, dtype=float, ensure_all_finite=False
        )
        y_arr = np.asarray(y, dtype=float).reshape(-1)
        if X_arr.shape[0] != y_arr.shape[0]:
            raise DimensionMismatch(
                f"X has {X_arr.shape[0]} rows but y has {y_arr.shape[0]} values"
            )

        if first_call:
            self._initialize(X_arr.shape[1])

        for t in range(X_arr.shape[0]):
            try:
                self._step_row(X_arr[t], y_arr[t])
            except (DimensionMismatch, NumericDegeneracy):
                if self.strict:
                    raise
                self._record_failure()

        if not online:
            self.batch_predictions_ = X_arr @ self.weights_
        return self

    def predict(self, X: npt.ArrayLike) -> np.ndarray:
        """Aggregate forecasts with the current weights, without updating.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_experts) or (n_experts,)

        Returns
        -------
        ndarray of shape (n_samples,)
        """
        check_is_fitted(self, "weights_")
        if not hasattr(X, "columns"):
            X = np.asarray(X, dtype=float)
            if X.ndim == 1:
                X = X.reshape(1, -1)
        self._check_width(X)
        X = validate_data(self, X=X, reset=False, dtype=float)
        return X @ self.weights_


def mixture(
    model: ModelKind | str = ModelKind.MLPOL,
    loss: str | BaseLoss = "square",
    X: npt.ArrayLike | None = None,
    y: npt.ArrayLike | None = None,
    **params: Any,
) -> Mixture:
    """Build a :class:`Mixture`, validate it and optionally pre-train it.

    Unlike the estimator constructor, the configuration is checked
    immediately.

    Parameters
    ----------
    model : str | ModelKind, default="MLpol"
        Aggregation rule.
    loss : str | BaseLoss, default="square"
        Loss function.
    X, y : array-like, optional
        Expert forecasts and observations replayed before returning.
    **params
        Other :class:`Mixture` parameters.

    Raises
    ------
    UnknownModelKind, UnknownLossKind, ConfigurationError
        On an invalid configuration.
    """
    estimator = Mixture(model=model, loss=loss, **params)
    estimator._build_strategy()
    if X is not None:
        if y is None:
            raise DimensionMismatch("observations y are required to pre-train")
        estimator.fit(X, y)
    return estimator
