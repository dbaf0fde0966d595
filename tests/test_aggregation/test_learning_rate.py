import numpy as np
import pytest

from skaggregate.aggregation import default_grid
from skaggregate.aggregation._learning_rate import (
    adaptive_rates,
    compute_ewa_learning_rate,
    scheduled_rate,
)


def test_ewa_learning_rate():
    assert np.isclose(compute_ewa_learning_rate(0, 4), np.sqrt(8 * np.log(4)))
    assert np.isclose(
        compute_ewa_learning_rate(99, 4, loss_bound=2.0),
        np.sqrt(8 * np.log(4) / 100) / 2.0,
    )


@pytest.mark.parametrize("n_experts,loss_bound", [(1, 1.0), (3, 0.0)])
def test_ewa_learning_rate_degenerate(n_experts, loss_bound):
    assert compute_ewa_learning_rate(5, n_experts, loss_bound) == 0.0


def test_scheduled_rate():
    assert scheduled_rate(1.0, 3, "sqrt") == 0.5
    assert scheduled_rate(0.2, 50, "constant") == 0.2


def test_adaptive_rates_are_capped():
    rates = adaptive_rates(np.array([0.0, 16.0]), 1.0, 4, 2.0)
    assert rates[0] == 0.5
    assert np.isclose(rates[1], np.sqrt(np.log(4) / 16.0))


def test_default_grid():
    grid = default_grid("ogd", ["eta"])
    assert len(grid["eta"]) == 9
    assert np.isclose(max(grid["eta"]), 10.0)
    grid = default_grid("FixedShare", ["eta", "alpha"])
    assert len(grid["eta"]) == 11
    assert all(0 <= a <= 1 for a in grid["alpha"])
    assert len(default_grid("ridge", ["lambda_reg"])["lambda_reg"]) == 7
    assert default_grid("mlpol", []) == {}


def test_default_grid_unknown_hyperparameter():
    with pytest.raises(ValueError):
        default_grid("ewa", ["gamma"])
