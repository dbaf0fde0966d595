import numpy as np
import pytest

from skaggregate.aggregation import Mixture, oracle, regret
from skaggregate.aggregation._regret import _running_regret

from .utils import make_exact_expert


@pytest.mark.parametrize("average", [False, True, "running", "final", "none"])
@pytest.mark.parametrize("comparator", ["expert", "uniform", "convex"])
def test_shapes_and_finiteness(X_experts, y_obs, average, comparator):
    r = regret(
        Mixture(model="MLpol"),
        X_experts,
        y_obs,
        comparator=comparator,
        average=average,
    )
    assert isinstance(r, np.ndarray)
    assert r.shape == y_obs.shape
    assert np.all(np.isfinite(r))


def test_running_and_final_average_agree(X_experts, y_obs):
    est = Mixture(model="BOA")
    r_cum = regret(est, X_experts, y_obs, comparator="expert")
    r_run = regret(est, X_experts, y_obs, comparator="expert", average="running")
    r_final = regret(est, X_experts, y_obs, comparator="expert", average="final")
    T = len(y_obs)
    assert np.isclose(r_run[-1], r_cum[-1] / T)
    np.testing.assert_allclose(r_final, r_cum[-1] / T)
    np.testing.assert_allclose(r_run, r_cum / np.arange(1, T + 1))


def test_windowed_regret(X_experts, y_obs):
    est = Mixture(model="MLewa")
    w = 10
    r_cum = regret(est, X_experts, y_obs, comparator="uniform")
    r_win = regret(est, X_experts, y_obs, comparator="uniform", window=w)
    r_win_run = regret(
        est, X_experts, y_obs, comparator="uniform", average="running", window=w
    )
    assert np.allclose(r_win[: w - 1], 0.0)
    np.testing.assert_allclose(r_win[w - 1], r_cum[w - 1])
    np.testing.assert_allclose(r_win[w:], r_cum[w:] - r_cum[:-w])
    np.testing.assert_allclose(r_win_run[w - 1 :], r_win[w - 1 :] / w)


def test_regret_against_exact_expert_is_small():
    X, y = make_exact_expert(T=200)
    r = regret(Mixture(model="MLpol"), X, y, comparator="expert", average="final")
    assert r[-1] < 0.01


def test_cumulative_regret_matches_losses(X_experts, y_obs):
    est = Mixture(model="MLprod")
    r = regret(est, X_experts, y_obs, comparator="expert")
    fitted = Mixture(model="MLprod").fit(X_experts, y_obs)
    best = oracle(y_obs, X_experts, kind="expert")
    assert np.isclose(r[-1], fitted.losses_.sum() - best.loss)


def test_precomputed_comparator(X_experts, y_obs):
    result = oracle(y_obs, X_experts, kind="shifting", max_shifts=3)
    r1 = regret(Mixture(model="MLpol"), X_experts, y_obs, comparator=result)
    r2 = regret(
        Mixture(model="MLpol"), X_experts, y_obs, comparator="shifting", max_shifts=3
    )
    np.testing.assert_allclose(r1, r2)


def test_comparator_uses_mixture_loss(X_experts, y_obs):
    est = Mixture(model="MLpol", loss="absolute")
    r = regret(est, X_experts, y_obs, comparator="expert")
    fitted = Mixture(model="MLpol", loss="absolute").fit(X_experts, y_obs)
    best = oracle(y_obs, X_experts, loss="absolute", kind="expert")
    assert np.isclose(r[-1], fitted.losses_.sum() - best.loss)


def test_estimator_is_not_fitted(X_experts, y_obs):
    est = Mixture(model="MLpol")
    regret(est, X_experts, y_obs, comparator="uniform")
    assert not hasattr(est, "weights_")


def test_comparator_length_mismatch(X_experts, y_obs):
    result = oracle(y_obs[:50], X_experts[:50], kind="expert")
    with pytest.raises(ValueError):
        regret(Mixture(), X_experts, y_obs, comparator=result)


def test_running_regret_validation():
    losses = np.ones(5)
    with pytest.raises(ValueError):
        _running_regret(losses, losses, average="median")
    with pytest.raises(ValueError):
        _running_regret(losses, losses, window=6)
    with pytest.raises(ValueError):
        _running_regret(losses, losses, window=0)


def test_running_regret_values():
    online = np.array([1.0, 2.0, 3.0, 4.0])
    comp = np.array([0.0, 1.0, 1.0, 0.0])
    np.testing.assert_allclose(_running_regret(online, comp), [1.0, 2.0, 4.0, 8.0])
    np.testing.assert_allclose(
        _running_regret(online, comp, window=2), [0.0, 2.0, 3.0, 6.0]
    )
    np.testing.assert_allclose(
        _running_regret(online, comp, average="final"), [2.0, 2.0, 2.0, 2.0]
    )
