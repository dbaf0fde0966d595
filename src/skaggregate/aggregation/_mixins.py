from enum import auto
from numbers import Integral, Real
from typing import ClassVar

from sklearn.utils._param_validation import Interval, StrOptions

from skaggregate.utils.tools import AutoEnum


class ModelKind(AutoEnum):
    """Aggregation rules supported by :class:`Mixture`.

    - EWA: exponentially weighted average
    - OGD: online gradient descent (mirror descent or FTRL form)
    - RIDGE: online ridge regression
    - MLPOL, MLPROD, MLEWA: second-order adaptive rates
    - BOA: Bernstein online aggregation
    - FIXED_SHARE: EWA mixed toward uniform to track switching experts
    """

    EWA = auto()
    OGD = auto()
    RIDGE = auto()
    MLPOL = auto()
    MLPROD = auto()
    MLEWA = auto()
    BOA = auto()
    FIXED_SHARE = auto()


MODEL_ALIASES = {
    "hedge": "ewa",
    "fs": "fixed_share",
    "gradient": "ogd",
    "eg": "ogd",
}


class LossKind(AutoEnum):
    SQUARE = auto()
    ABSOLUTE = auto()
    PERCENTAGE = auto()
    PINBALL = auto()


LOSS_ALIASES = {
    "mse": "square",
    "squared": "square",
    "mae": "absolute",
    "mape": "percentage",
    "quantile": "pinball",
}


class OracleKind(AutoEnum):
    EXPERT = auto()
    UNIFORM = auto()
    CONVEX = auto()
    LINEAR = auto()
    SHIFTING = auto()


class CalibrationMode(AutoEnum):
    """How shadow instances of a calibrated model are combined.

    - META: EWA over the shadows' cumulative losses
    - SELECT: follow the shadow with the lowest cumulative loss
    """

    META = auto()
    SELECT = auto()


class Constraint(AutoEnum):
    SIMPLEX = auto()
    NONE = auto()


class Geometry(AutoEnum):
    EUCLIDEAN = auto()
    ENTROPY = auto()


class UpdateMode(AutoEnum):
    OMD = auto()
    FTRL = auto()


class Schedule(AutoEnum):
    SQRT = auto()
    CONSTANT = auto()


class MixtureParameterConstraintsMixin:
    _parameter_constraints: ClassVar[dict] = {
        "model": [str, ModelKind],
        "loss": [str, callable],
        "quantile": [Interval(Real, 0, 1, closed="neither")],
        "loss_gradient": ["boolean"],
        "eta": [Interval(Real, 0, None, closed="neither"), None],
        "alpha": [Interval(Real, 0, 1, closed="both"), None],
        "lambda_reg": [Interval(Real, 0, None, closed="left"), None],
        "param_grid": [dict, None],
        "calibration": [StrOptions({"meta", "select"}), CalibrationMode],
        "constraint": [StrOptions({"simplex", "none"}), Constraint],
        "geometry": [StrOptions({"euclidean", "entropy"}), Geometry],
        "update_mode": [StrOptions({"omd", "ftrl"}), UpdateMode],
        "schedule": [StrOptions({"sqrt", "constant"}), Schedule],
        "recompute_every": [Interval(Integral, 1, None, closed="left")],
        "initial_weights": ["array-like", None],
        "initial_state": "no_validation",
        "zero_division": [StrOptions({"absolute", "raise"})],
        "strict": ["boolean"],
        "warm_start": ["boolean"],
        "n_jobs": [Integral, None],
    }
