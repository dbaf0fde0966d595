"""Loss functions scoring a forecast against an observation.

Every loss is pure and vectorised: ``pred`` may be the scalar aggregate or the
whole expert row, ``obs`` a scalar or an array broadcastable against it.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable

import cvxpy as cp
import numpy as np
import numpy.typing as npt
from autograd import elementwise_grad

from skaggregate.aggregation._mixins import LOSS_ALIASES, LossKind
from skaggregate.exceptions import (
    ConfigurationError,
    DivisionByZeroLoss,
    UnknownLossKind,
)


def _to_output(value: np.ndarray) -> float | np.ndarray:
    if np.ndim(value) == 0:
        return float(value)
    return value


class BaseLoss(ABC):
    """Base class of the losses ``l(pred, obs)``."""

    name: str = "base"

    @abstractmethod
    def loss(self, pred: npt.ArrayLike, obs: npt.ArrayLike) -> float | np.ndarray:
        raise NotImplementedError("Must implement loss computation")

    @abstractmethod
    def gradient(
        self, pred: npt.ArrayLike, obs: npt.ArrayLike
    ) -> float | np.ndarray:
        """Derivative (subgradient for non-smooth losses) with respect to ``pred``."""
        raise NotImplementedError("Must implement gradient computation")

    def cvx_loss(self, pred: cp.Expression, obs: np.ndarray) -> cp.Expression:
        """Summed loss as a DCP-convex cvxpy expression of the predictions."""
        raise ConfigurationError(
            f"{type(self).__name__} has no convex formulation; "
            "use the expert, uniform or shifting oracles"
        )

    def is_degenerate(self, obs: npt.ArrayLike) -> bool:
        """Whether scoring ``obs`` needs a fallback policy."""
        return False

    def __call__(self, pred: npt.ArrayLike, obs: npt.ArrayLike) -> float | np.ndarray:
        return self.loss(pred, obs)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SquareLoss(BaseLoss):
    name = "square"

    def loss(self, pred, obs):
        diff = np.asarray(pred, dtype=float) - np.asarray(obs, dtype=float)
        return _to_output(diff**2)

    def gradient(self, pred, obs):
        diff = np.asarray(pred, dtype=float) - np.asarray(obs, dtype=float)
        return _to_output(2.0 * diff)

    def cvx_loss(self, pred, obs):
        return cp.sum_squares(pred - obs)


class AbsoluteLoss(BaseLoss):
    name = "absolute"

    def loss(self, pred, obs):
        diff = np.asarray(pred, dtype=float) - np.asarray(obs, dtype=float)
        return _to_output(np.abs(diff))

    def gradient(self, pred, obs):
        diff = np.asarray(pred, dtype=float) - np.asarray(obs, dtype=float)
        return _to_output(np.sign(diff))

    def cvx_loss(self, pred, obs):
        return cp.norm1(pred - obs)


class PercentageLoss(BaseLoss):
    """Absolute percentage error ``|pred - obs| / |obs|``.

    Parameters
    ----------
    zero_division : {"absolute", "raise"}, default="absolute"
        Policy for ``obs == 0``. ``"absolute"`` scores those entries with the
        absolute loss, ``"raise"`` raises :class:`DivisionByZeroLoss`.
    """

    name = "percentage"

    def __init__(self, zero_division: str = "absolute"):
        if zero_division not in ("absolute", "raise"):
            raise ConfigurationError(
                f"zero_division must be 'absolute' or 'raise', got {zero_division!r}"
            )
        self.zero_division = zero_division

    def _scale(self, obs: npt.ArrayLike) -> np.ndarray:
        obs_arr = np.abs(np.asarray(obs, dtype=float))
        zero = obs_arr == 0
        if np.any(zero):
            if self.zero_division == "raise":
                raise DivisionByZeroLoss(
                    "percentage loss is undefined for an observation equal to 0"
                )
            obs_arr = np.where(zero, 1.0, obs_arr)
        return obs_arr

    def loss(self, pred, obs):
        diff = np.asarray(pred, dtype=float) - np.asarray(obs, dtype=float)
        return _to_output(np.abs(diff) / self._scale(obs))

    def gradient(self, pred, obs):
        diff = np.asarray(pred, dtype=float) - np.asarray(obs, dtype=float)
        return _to_output(np.sign(diff) / self._scale(obs))

    def cvx_loss(self, pred, obs):
        scale = self._scale(obs)
        return cp.sum(cp.multiply(1.0 / scale, cp.abs(pred - obs)))

    def is_degenerate(self, obs):
        return bool(np.any(np.asarray(obs, dtype=float) == 0))

    def __repr__(self) -> str:
        return f"PercentageLoss(zero_division={self.zero_division!r})"


class PinballLoss(BaseLoss):
    r"""Quantile (pinball) loss at level :math:`\tau \in (0, 1)`.

    :math:`\tau (y - \hat y)` when :math:`y \ge \hat y`, otherwise
    :math:`(\tau - 1)(y - \hat y)`.
    """

    name = "pinball"

    def __init__(self, quantile: float = 0.5):
        if not 0.0 < float(quantile) < 1.0:
            raise ConfigurationError(
                f"quantile must lie in the open interval (0, 1), got {quantile}"
            )
        self.quantile = float(quantile)

    def loss(self, pred, obs):
        u = np.asarray(obs, dtype=float) - np.asarray(pred, dtype=float)
        tau = self.quantile
        return _to_output(np.where(u >= 0, tau * u, (tau - 1.0) * u))

    def gradient(self, pred, obs):
        above = np.asarray(obs, dtype=float) >= np.asarray(pred, dtype=float)
        tau = self.quantile
        return _to_output(np.where(above, -tau, 1.0 - tau))

    def cvx_loss(self, pred, obs):
        u = obs - pred
        tau = self.quantile
        return cp.sum(cp.maximum(tau * u, (tau - 1.0) * u))

    def __repr__(self) -> str:
        return f"PinballLoss(quantile={self.quantile})"


class CustomLoss(BaseLoss):
    """User-defined loss differentiated with autograd.

    Parameters
    ----------
    fn : callable
        ``fn(pred, obs)`` written with ``autograd.numpy`` so that it accepts
        arrays elementwise.
    name : str, optional
        Display name.

    Examples
    --------
    >>> import autograd.numpy as anp
    >>> loss = CustomLoss(lambda p, y: anp.log(anp.cosh(p - y)), name="logcosh")
    >>> loss.gradient(1.0, 1.0)
    0.0
    """

    def __init__(self, fn: Callable, name: str = "custom"):
        self.fn = fn
        self.name = name
        self._grad = elementwise_grad(fn, 0)

    def loss(self, pred, obs):
        pred_arr = np.asarray(pred, dtype=float)
        obs_arr = np.broadcast_to(np.asarray(obs, dtype=float), pred_arr.shape)
        return _to_output(np.asarray(self.fn(pred_arr, obs_arr), dtype=float))

    def gradient(self, pred, obs):
        pred_arr = np.asarray(pred, dtype=float)
        obs_arr = np.broadcast_to(np.asarray(obs, dtype=float), pred_arr.shape)
        return _to_output(np.asarray(self._grad(pred_arr, obs_arr), dtype=float))

    def __repr__(self) -> str:
        return f"CustomLoss(name={self.name!r})"


def make_loss(
    loss: "str | LossKind | BaseLoss | Callable",
    quantile: float = 0.5,
    zero_division: str = "absolute",
) -> BaseLoss:
    """Resolve a loss name, kind, instance or callable into a :class:`BaseLoss`.

    Raises
    ------
    UnknownLossKind
        If `loss` names no supported loss.
    ConfigurationError
        If `quantile` or `zero_division` is out of domain.
    """
    if isinstance(loss, BaseLoss):
        return loss
    if callable(loss) and not isinstance(loss, str):
        return CustomLoss(loss, name=getattr(loss, "__name__", "custom"))
    try:
        kind = LossKind.from_name(loss, aliases=LOSS_ALIASES)
    except KeyError:
        raise UnknownLossKind(
            f"Unknown loss {loss!r}. Choose one of {[k.value for k in LossKind]}."
        ) from None
    match kind:
        case LossKind.SQUARE:
            return SquareLoss()
        case LossKind.ABSOLUTE:
            return AbsoluteLoss()
        case LossKind.PERCENTAGE:
            return PercentageLoss(zero_division=zero_division)
        case LossKind.PINBALL:
            return PinballLoss(quantile=quantile)
