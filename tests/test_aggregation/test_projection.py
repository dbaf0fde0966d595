import numpy as np
import pytest

from skaggregate.aggregation._projection import (
    IdentityProjector,
    SimplexProjector,
    project_simplex,
)


def test_project_simplex_identity():
    y = np.array([0.9, 0.1])
    w = project_simplex(y)
    assert np.allclose(w, y)


def test_project_simplex_symmetric():
    w = project_simplex(np.array([0.6, 0.6]))
    assert np.allclose(w, [0.5, 0.5], atol=1e-12)


def test_project_simplex_with_clipping():
    w = project_simplex(np.array([-0.1, 1.1]))
    assert np.allclose(w, [0.0, 1.0], atol=1e-12)


def test_project_simplex_budget():
    w = project_simplex(np.array([3.0, 1.0, -2.0]), budget=2.0)
    assert np.isclose(w.sum(), 2.0)
    assert np.all(w >= 0)
    assert np.allclose(w, [2.0, 0.0, 0.0])


def test_project_simplex_is_closest_point():
    rng = np.random.default_rng(3)
    y = rng.standard_normal(5)
    w = project_simplex(y)
    # Random simplex points are never closer
    for _ in range(200):
        v = rng.dirichlet(np.ones(5))
        assert np.sum((w - y) ** 2) <= np.sum((v - y) ** 2) + 1e-12


def test_project_simplex_invalid_budget():
    with pytest.raises(ValueError):
        project_simplex(np.array([0.5, 0.5]), budget=0.0)


def test_projectors():
    y = np.array([2.0, -1.0])
    np.testing.assert_allclose(IdentityProjector().project(y), y)
    np.testing.assert_allclose(SimplexProjector().project(y), [1.0, 0.0])
