"""Learning-rate schedules and default calibration grids.

Theory-driven rates for the aggregation rules, following the usual
finite-time bounds for prediction with expert advice.

References
----------
- Cesa-Bianchi, N., & Lugosi, G. (2006). Prediction, Learning, and Games.
- Hazan, E. (2016). Introduction to Online Convex Optimization.
- Gaillard, P., Stoltz, G., & van Erven, T. (2014). A second-order bound with
  excess losses. COLT.
"""

import numpy as np

from skaggregate.aggregation._mixins import ModelKind, Schedule


def compute_ewa_learning_rate(t: int, n_experts: int, loss_bound: float = 1.0) -> float:
    """Anytime EWA rate ``sqrt(8 log n / (t+1)) / B`` for losses in ``[0, B]``.

    Returns 0 when there is a single expert or no loss has been observed,
    which leaves the weights uniform.

    Examples
    --------
    >>> round(compute_ewa_learning_rate(0, 4), 3)
    3.33
    """
    if n_experts < 2 or loss_bound <= 0:
        return 0.0
    t_theory = t + 1
    return float(np.sqrt(8.0 * np.log(n_experts) / t_theory) / loss_bound)


def scheduled_rate(
    eta: float, t: int, schedule: Schedule | str = Schedule.SQRT
) -> float:
    """Rate at round `t` (0-indexed) for a base rate `eta`."""
    match Schedule.from_name(schedule):
        case Schedule.SQRT:
            return float(eta) / np.sqrt(t + 1)
        case Schedule.CONSTANT:
            return float(eta)


def adaptive_rates(
    sq_regret: np.ndarray, loss_bound: float, n_experts: int, bound_factor: float
) -> np.ndarray:
    r"""Per-expert second-order rates
    :math:`\eta_k = \min(1 / (c B), \sqrt{\log K / \sum_s r_{s,k}^2})`.

    Parameters
    ----------
    sq_regret : ndarray of shape (n_experts,)
        Cumulative squared instantaneous regrets (plus any offset).
    loss_bound : float
        Largest absolute instantaneous regret seen so far, ``B``. Must be positive.
    n_experts : int
        Number of experts ``K``.
    bound_factor : float
        The constant ``c`` (1 for MLewa, 2 for MLprod and BOA).
    """
    cap = 1.0 / (bound_factor * loss_bound)
    with np.errstate(divide="ignore"):
        rates = np.sqrt(np.log(n_experts) / np.asarray(sq_regret, dtype=float))
    return np.minimum(cap, rates)


def default_grid(model: ModelKind | str, missing: list[str]) -> dict[str, list[float]]:
    """Default candidate values for the hyperparameters in `missing`.

    Learning rates span several orders of magnitude since their right scale
    depends on the loss range, which is unknown before the data arrive.

    Examples
    --------
    >>> sorted(default_grid("fixed_share", ["eta", "alpha"]))
    ['alpha', 'eta']
    """
    kind = ModelKind.from_name(model)
    grid: dict[str, list[float]] = {}
    for name in missing:
        match name:
            case "eta" if kind == ModelKind.OGD:
                grid[name] = np.geomspace(1e-3, 10.0, 9).tolist()
            case "eta":
                grid[name] = np.geomspace(1e-3, 1e2, 11).tolist()
            case "alpha":
                grid[name] = [1e-4, 1e-3, 1e-2, 5e-2, 1e-1]
            case "lambda_reg":
                grid[name] = np.geomspace(1e-3, 1e3, 7).tolist()
            case _:
                raise ValueError(f"No default grid for hyperparameter {name!r}")
    return grid
