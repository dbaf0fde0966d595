"""Online aggregation of expert forecasts, hindsight oracles and regret."""

from skaggregate.aggregation._base import AlgorithmState, BaseStrategy
from skaggregate.aggregation._calibration import CalibrationState, ParameterCalibrator
from skaggregate.aggregation._descent import OGD, DescentState
from skaggregate.aggregation._ewa import EWA, EWAState, FixedShare
from skaggregate.aggregation._learning_rate import default_grid
from skaggregate.aggregation._loss import (
    AbsoluteLoss,
    BaseLoss,
    CustomLoss,
    PercentageLoss,
    PinballLoss,
    SquareLoss,
    make_loss,
)
from skaggregate.aggregation._mixins import (
    CalibrationMode,
    LossKind,
    ModelKind,
    OracleKind,
)
from skaggregate.aggregation._mixture import Mixture, MixtureHistory, mixture
from skaggregate.aggregation._oracle import OracleResult, compute_oracles, oracle
from skaggregate.aggregation._polynomial import (
    BOA,
    MLewa,
    MLpol,
    MLprod,
    PolynomialState,
)
from skaggregate.aggregation._regret import regret
from skaggregate.aggregation._ridge import Ridge, RidgeState

__all__ = [
    "AbsoluteLoss",
    "AlgorithmState",
    "BaseLoss",
    "BaseStrategy",
    "BOA",
    "CalibrationMode",
    "CalibrationState",
    "compute_oracles",
    "CustomLoss",
    "default_grid",
    "DescentState",
    "EWA",
    "EWAState",
    "FixedShare",
    "LossKind",
    "make_loss",
    "Mixture",
    "mixture",
    "MixtureHistory",
    "MLewa",
    "MLpol",
    "MLprod",
    "ModelKind",
    "OGD",
    "oracle",
    "OracleKind",
    "OracleResult",
    "ParameterCalibrator",
    "PercentageLoss",
    "PinballLoss",
    "PolynomialState",
    "regret",
    "Ridge",
    "RidgeState",
    "SquareLoss",
]
