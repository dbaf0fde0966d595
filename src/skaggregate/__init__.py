"""skaggregate: online aggregation of expert forecasts."""

import importlib.metadata

from skaggregate.aggregation import (
    Mixture,
    ModelKind,
    OracleKind,
    OracleResult,
    compute_oracles,
    mixture,
    oracle,
    regret,
)

try:
    __version__ = importlib.metadata.version("skaggregate")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "compute_oracles",
    "Mixture",
    "mixture",
    "ModelKind",
    "oracle",
    "OracleKind",
    "OracleResult",
    "regret",
]
