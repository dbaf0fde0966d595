import numpy as np
import pandas as pd
import pytest


@pytest.fixture(scope="session")
def y_obs():
    rng = np.random.default_rng(42)
    t = np.arange(120)
    return np.sin(t / 8.0) + 0.1 * rng.standard_normal(t.size)


@pytest.fixture(scope="session")
def X_experts(y_obs):
    # One sharp, one noisy and one biased forecaster
    rng = np.random.default_rng(0)
    return np.column_stack(
        [
            y_obs + 0.05 * rng.standard_normal(y_obs.size),
            y_obs + 0.5 * rng.standard_normal(y_obs.size),
            y_obs + 1.0,
        ]
    )


@pytest.fixture(scope="session")
def X_frame(X_experts):
    return pd.DataFrame(X_experts, columns=["sharp", "noisy", "biased"])
