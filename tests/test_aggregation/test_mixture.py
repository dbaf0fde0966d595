import numpy as np
import pytest
from sklearn.base import clone

from skaggregate.aggregation import (
    EWA,
    AlgorithmState,
    Mixture,
    MixtureHistory,
    ModelKind,
    mixture,
)
from skaggregate.exceptions import (
    ConfigurationError,
    DimensionMismatch,
    DivisionByZeroLoss,
    InvalidCalibrationGrid,
    NumericDegeneracy,
    UnknownLossKind,
    UnknownModelKind,
)

from .utils import MODELS, SIMPLEX_MODELS, assert_simplex_trajectory


def test_two_experts_scenario():
    X = np.array([[1.0, 3.0]] * 3)
    y = np.ones(3)
    model = Mixture(model="EWA", eta=1.0).fit(X, y)
    np.testing.assert_allclose(model.expert_losses_[:, 0], 0.0)
    np.testing.assert_allclose(model.expert_losses_.cumsum(axis=0)[:, 1], [4, 8, 12])
    assert np.all(np.diff(model.all_weights_[:, 0]) > 0)
    assert model.predictions_[0] == 2.0
    assert model.last_prediction_ == model.predictions_[-1]
    assert isinstance(model.strategy_, EWA)


@pytest.mark.parametrize("model", SIMPLEX_MODELS)
def test_weights_stay_on_simplex(model, X_experts, y_obs):
    est = Mixture(model=model).fit(X_experts, y_obs)
    assert est.all_weights_.shape == X_experts.shape
    assert_simplex_trajectory(est.all_weights_)
    assert_simplex_trajectory(est.weights_)


@pytest.mark.parametrize("model", MODELS)
def test_prefix_replay_is_causal(model, X_experts, y_obs):
    full = Mixture(model=model).fit(X_experts, y_obs)
    prefix = Mixture(model=model).fit(X_experts[:50], y_obs[:50])
    np.testing.assert_allclose(prefix.predictions_, full.predictions_[:50])
    np.testing.assert_allclose(prefix.all_weights_, full.all_weights_[:50])


@pytest.mark.parametrize("model", MODELS)
def test_fit_matches_partial_fit(model, X_experts, y_obs):
    batch = Mixture(model=model).fit(X_experts, y_obs)
    stream = Mixture(model=model)
    predictions = [
        stream.step(X_experts[t : t + 1], y_obs[t]) for t in range(len(y_obs))
    ]
    np.testing.assert_allclose(predictions, batch.predictions_)
    np.testing.assert_allclose(stream.weights_, batch.weights_)
    np.testing.assert_allclose(stream.losses_, batch.losses_)


@pytest.mark.parametrize("model", MODELS)
def test_single_expert_pass_through(model, X_experts, y_obs):
    est = Mixture(model=model).fit(X_experts[:, :1], y_obs)
    np.testing.assert_array_equal(est.predictions_, X_experts[:, 0])
    np.testing.assert_array_equal(est.weights_, [1.0])


@pytest.mark.parametrize("model", MODELS)
def test_accumulated_losses(model, X_experts, y_obs):
    est = Mixture(model=model).fit(X_experts, y_obs)
    np.testing.assert_allclose(est.losses_, (est.predictions_ - y_obs) ** 2)
    np.testing.assert_allclose(est.state_.loss, est.losses_.sum())
    np.testing.assert_allclose(est.state_.expert_loss, est.expert_losses_.sum(axis=0))
    assert est.state_.t == len(y_obs)


def test_partial_fit_is_transactional(X_experts, y_obs):
    est = Mixture(model="EWA", eta=1.0)
    est.partial_fit(X_experts[0:1], y_obs[0])
    est.partial_fit(X_experts[1], y_obs[1])
    weights, n_steps = est.weights_.copy(), len(est.history_)

    with pytest.raises(DimensionMismatch):
        est.partial_fit(X_experts[2:3, :2], y_obs[2])
    with pytest.raises(DimensionMismatch):
        est.partial_fit(X_experts[2:4], y_obs[2:4])
    with pytest.raises(NumericDegeneracy):
        est.partial_fit([[np.nan, 1.0, 2.0]], y_obs[2])
    with pytest.raises(NumericDegeneracy):
        est.partial_fit(X_experts[2:3], np.inf)

    np.testing.assert_array_equal(est.weights_, weights)
    assert len(est.history_) == n_steps
    assert est.state_.t == 2


def test_failed_first_partial_fit_leaves_estimator_unfitted():
    est = Mixture(model="MLpol")
    with pytest.raises(NumericDegeneracy):
        est.partial_fit([[np.nan, 1.0]], 1.0)
    assert not hasattr(est, "state_")
    est.partial_fit([[1.0, 2.0, 3.0]], 1.0)
    assert est.n_features_in_ == 3


def test_non_strict_fit_skips_failing_rows(X_experts, y_obs):
    X = X_experts.copy()
    X[3, 1] = np.nan
    est = Mixture(model="BOA")
    with pytest.warns(UserWarning, match="Step failed"):
        est.fit(X, y_obs)
    assert np.isnan(est.predictions_[3])
    assert est.events_[3] == ("step_failed",)
    mask = np.arange(len(y_obs)) != 3
    assert np.all(np.isfinite(est.predictions_[mask]))
    np.testing.assert_array_equal(est.all_weights_[4], est.all_weights_[3])
    assert est.state_.t == len(y_obs) - 1


def test_strict_fit_raises(X_experts, y_obs):
    X = X_experts.copy()
    X[3, 1] = np.nan
    with pytest.raises(NumericDegeneracy):
        Mixture(model="BOA", strict=True).fit(X, y_obs)


def test_percentage_fallback_is_flagged(X_experts, y_obs):
    y = y_obs.copy()
    y[5] = 0.0
    est = Mixture(model="MLpol", loss="percentage")
    with pytest.warns(UserWarning, match="percentage loss"):
        est.fit(X_experts, y)
    assert "percentage_fallback" in est.events_[5]
    assert np.isclose(est.losses_[5], abs(est.predictions_[5]))


def test_percentage_zero_division_raise(X_experts, y_obs):
    y = y_obs.copy()
    y[5] = 0.0
    with pytest.raises(DivisionByZeroLoss):
        Mixture(
            model="MLpol", loss="percentage", zero_division="raise", strict=True
        ).fit(X_experts, y)
    with pytest.warns(UserWarning):
        est = Mixture(model="MLpol", loss="percentage", zero_division="raise").fit(
            X_experts, y
        )
    assert est.events_[5] == ("step_failed",)


def test_singular_moment_warning():
    X = np.array([[1.0, 1.0], [1.0, -1.0], [2.0, 0.5]])
    y = np.array([2.0, 0.0, 2.5])
    est = Mixture(model="Ridge", lambda_reg=0.0)
    with pytest.warns(UserWarning, match="Singular"):
        est.fit(X, y)
    assert est.events_[0] == ("singular_moment",)
    np.testing.assert_allclose(est.weights_, [1.0, 1.0])


@pytest.mark.parametrize("loss", ["absolute", "pinball", "percentage"])
@pytest.mark.parametrize("loss_gradient", [False, True])
def test_other_losses(loss, loss_gradient, X_experts, y_obs):
    est = Mixture(model="MLpol", loss=loss, loss_gradient=loss_gradient)
    est.fit(X_experts, y_obs)
    assert_simplex_trajectory(est.all_weights_)
    assert est.loss_.name == loss


def test_unknown_model():
    with pytest.raises(UnknownModelKind):
        Mixture(model="Boosting").fit(np.ones((2, 2)), np.ones(2))
    with pytest.raises(UnknownModelKind):
        mixture("Boosting")


def test_unknown_loss():
    with pytest.raises(UnknownLossKind):
        mixture("EWA", loss="huber", eta=1.0)


@pytest.mark.parametrize(
    "params",
    [
        {"eta": -1.0},
        {"alpha": 1.5},
        {"quantile": 1.0},
        {"calibration": "vote"},
        {"recompute_every": 0},
        {"zero_division": "ignore"},
    ],
)
def test_invalid_configuration(params):
    with pytest.raises(ConfigurationError):
        mixture("FixedShare", **params)
    with pytest.raises(ValueError):
        Mixture(model="FixedShare", **params).fit(np.ones((2, 2)), np.ones(2))


def test_empty_grid():
    with pytest.raises(InvalidCalibrationGrid):
        mixture("EWA", param_grid={})


@pytest.mark.parametrize(
    "model,params",
    [
        ("EWA", {"eta": 1.0, "param_grid": {"eta": [5.0, 10.0]}}),
        ("FixedShare", {"alpha": 0.1, "param_grid": {"alpha": [0.01], "eta": [1.0]}}),
        ("Ridge", {"lambda_reg": 1.0, "param_grid": {"lambda_reg": [0.1]}}),
    ],
)
def test_grid_cannot_override_explicit_value(model, params, X_experts, y_obs):
    with pytest.raises(InvalidCalibrationGrid):
        Mixture(model=model, **params).fit(X_experts, y_obs)


def test_explicit_value_is_used_with_grid_on_other_names(X_experts, y_obs):
    est = Mixture(model="FixedShare", eta=2.0, param_grid={"alpha": [0.01, 0.1]})
    est.fit(X_experts, y_obs)
    assert est.strategy_.fixed_params["eta"] == 2.0
    assert list(est.strategy_.param_grid) == ["alpha"]
    assert est.state_.hyperparameters["eta"] == 2.0


def test_explicit_eta_is_not_calibrated(X_experts, y_obs):
    est = Mixture(model="EWA", eta=1.0).fit(X_experts, y_obs)
    assert isinstance(est.strategy_, EWA)
    assert est.state_.hyperparameters == {"eta": 1.0}


def test_default_ogd_grid_scales_gradients():
    assert mixture("OGD")._build_strategy().fixed_params["gradient_scaling"]
    grid = {"eta": [0.1, 1.0]}
    assert "gradient_scaling" not in mixture(
        "OGD", param_grid=grid
    )._build_strategy().fixed_params
    assert not mixture("OGD", eta=0.1)._build_strategy().gradient_scaling


def test_default_ogd_grid_is_scale_free(X_experts, y_obs):
    base = Mixture(model="OGD").fit(X_experts, y_obs)
    scaled = Mixture(model="OGD").fit(1e4 * X_experts, 1e4 * y_obs)
    np.testing.assert_allclose(scaled.all_weights_, base.all_weights_, atol=1e-8)
    # the biased expert is never the favourite
    assert np.argmax(scaled.weights_) != 2


def test_model_aliases():
    assert isinstance(mixture("hedge", eta=1.0)._build_strategy(), EWA)
    assert ModelKind.from_name("Fixed-Share") is ModelKind.FIXED_SHARE


def test_mixture_factory_pretrains(X_experts, y_obs):
    est = mixture("MLpol", "square", X_experts, y_obs)
    assert len(est.history_) == len(y_obs)
    with pytest.raises(DimensionMismatch):
        mixture("MLpol", "square", X_experts)


def test_mismatched_lengths(X_experts, y_obs):
    with pytest.raises(DimensionMismatch):
        Mixture().fit(X_experts, y_obs[:-1])


def test_width_is_fixed_after_first_step(X_experts, y_obs):
    est = Mixture().fit(X_experts, y_obs)
    with pytest.raises(DimensionMismatch):
        est.partial_fit(X_experts[0, :2], y_obs[0])
    with pytest.raises(DimensionMismatch):
        est.predict(X_experts[:, :2])


def test_predict_does_not_update(X_experts, y_obs):
    est = Mixture(model="BOA").fit(X_experts[:100], y_obs[:100])
    weights = est.weights_.copy()
    pred = est.predict(X_experts[100:])
    np.testing.assert_allclose(pred, X_experts[100:] @ weights)
    np.testing.assert_array_equal(est.weights_, weights)
    assert len(est.history_) == 100


def test_batch_predictions(X_experts, y_obs):
    est = Mixture(model="MLewa").fit(X_experts, y_obs, online=False)
    np.testing.assert_allclose(est.batch_predictions_, X_experts @ est.weights_)
    assert not hasattr(Mixture().fit(X_experts, y_obs), "batch_predictions_")


def test_resume_from_checkpoint(X_experts, y_obs):
    full = Mixture(model="MLprod").fit(X_experts, y_obs)
    first = Mixture(model="MLprod").fit(X_experts[:60], y_obs[:60])
    resumed = Mixture(model="MLprod", initial_state=first.state_)
    resumed.fit(X_experts[60:], y_obs[60:])
    np.testing.assert_allclose(resumed.predictions_, full.predictions_[60:])
    np.testing.assert_allclose(resumed.weights_, full.weights_)
    assert first.state_.t == 60
    assert isinstance(first.state_, AlgorithmState)


def test_checkpoint_of_another_rule(X_experts, y_obs):
    ewa = Mixture(model="EWA", eta=1.0).fit(X_experts, y_obs)
    with pytest.raises(ConfigurationError):
        Mixture(model="MLpol", initial_state=ewa.state_).fit(X_experts, y_obs)
    with pytest.raises(DimensionMismatch):
        Mixture(model="EWA", eta=1.0, initial_state=ewa.state_).fit(
            X_experts[:, :2], y_obs
        )


def test_initial_weights(X_experts, y_obs):
    est = Mixture(model="EWA", eta=1.0, initial_weights=[3.0, 1.0, 0.0])
    est.fit(X_experts, y_obs)
    np.testing.assert_allclose(est.all_weights_[0], [0.75, 0.25, 0.0])
    assert np.all(est.all_weights_[:, 2] == 0.0)


def test_warm_start(X_experts, y_obs):
    full = Mixture(model="MLpol").fit(X_experts, y_obs)
    est = Mixture(model="MLpol", warm_start=True)
    est.fit(X_experts[:60], y_obs[:60])
    est.fit(X_experts[60:], y_obs[60:])
    assert len(est.history_) == len(y_obs)
    np.testing.assert_allclose(est.predictions_, full.predictions_)


def test_refit_restarts_without_warm_start(X_experts, y_obs):
    est = Mixture(model="MLpol")
    est.fit(X_experts, y_obs)
    first = est.predictions_
    est.fit(X_experts, y_obs)
    assert len(est.history_) == len(y_obs)
    np.testing.assert_allclose(est.predictions_, first)


def test_dataframe_history(X_frame, y_obs):
    est = Mixture(model="BOA").fit(X_frame, y_obs)
    frame = est.history_.to_frame()
    assert frame.shape == (len(y_obs), 9)
    assert {"weight_sharp", "loss_biased", "prediction", "events"} <= set(frame)
    np.testing.assert_allclose(frame["prediction"], est.predictions_)
    assert est.predict(X_frame.iloc[:5]).shape == (5,)


def test_history_arrays_are_copies():
    history = MixtureHistory(["a", "b"])
    history.append(1.0, 0.5, np.array([0.1, 0.2]), np.array([0.5, 0.5]))
    history.weights[0, 0] = 10.0
    assert history.weights[0, 0] == 0.5
    assert len(history) == 1
    assert history.events == [()]


def test_empty_history():
    history = MixtureHistory(["a", "b"])
    assert history.weights.shape == (0, 2)
    assert history.to_frame().shape == (0, 7)


def test_clone_and_params():
    est = Mixture(model="FixedShare", alpha=0.1, param_grid={"eta": [1.0, 2.0]})
    cloned = clone(est)
    assert cloned.get_params() == est.get_params()
    assert not hasattr(cloned, "weights_")


def test_error_hierarchy():
    assert issubclass(UnknownModelKind, ConfigurationError)
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(DimensionMismatch, ValueError)
    assert issubclass(NumericDegeneracy, ArithmeticError)
