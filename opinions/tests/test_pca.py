"""
Tests for the PCA projection.
"""

import pytest
import numpy as np
from opinions.clustering import compute_pca, project_votes
from opinions.clustering.pca import apply_sign_convention
from opinions.exceptions import ComputationError


def random_votes(n_users=30, n_statements=8, seed=0):
    rng = np.random.RandomState(seed)
    return rng.choice([-1, 0, 1], size=(n_users, n_statements)).astype(float)


def test_pca_shapes_and_variance():
    X = random_votes()
    result = compute_pca(X)

    assert result.projections.shape == (30, 2)
    assert result.components.shape == (2, 8)
    assert result.mean_vector.shape == (8,)
    assert len(result.variance_explained) == 2
    assert 0 < result.total_variance_explained <= 1
    # First component explains at least as much as the second
    assert result.variance_explained[0] >= result.variance_explained[1]


def test_sign_convention_largest_loading_positive():
    result = compute_pca(random_votes(seed=3))

    for component in result.components:
        pivot = np.argmax(np.abs(component))
        assert component[pivot] > 0


def test_sign_convention_tie_goes_to_lowest_column():
    flipped = apply_sign_convention([[-0.5, 0.5], [0.0, 0.0]])
    assert list(flipped[0]) == [0.5, -0.5]
    assert list(flipped[1]) == [0.0, 0.0]


def test_mirrored_input_gives_same_components():
    """Negating every vote must not mirror the components."""
    X = random_votes(seed=5)
    a = compute_pca(X)
    b = compute_pca(-X)

    assert np.allclose(a.components, b.components)
    assert np.allclose(a.projections, -b.projections)


def test_pca_deterministic():
    X = random_votes(seed=7)
    first = compute_pca(X)
    second = compute_pca(X.copy())

    assert np.array_equal(first.projections, second.projections)
    assert np.array_equal(first.components, second.components)


def test_identical_rows_identical_projections():
    X = random_votes(seed=11)
    X[5] = X[2]
    result = compute_pca(X)
    assert np.array_equal(result.projections[5], result.projections[2])


def test_all_identical_votes_degenerate():
    """No variance: zero loadings, zero projections, no crash."""
    X = np.ones((20, 6))
    result = compute_pca(X)

    assert np.allclose(result.projections, 0.0)
    assert np.allclose(result.components, 0.0)
    assert result.total_variance_explained == 0.0


def test_rank_one_matrix():
    """Two opposite camps: all variance on the first component."""
    camp = np.array([1, 1, 1, -1, -1, -1], dtype=float)
    X = np.vstack([camp] * 10 + [-camp] * 10)
    result = compute_pca(X)

    assert result.variance_explained[0] == pytest.approx(1.0)
    assert result.variance_explained[1] == 0.0
    assert np.allclose(result.projections[:, 1], 0.0)
    # Camp A loads positively on the first statement, so it sits on the right
    assert result.projections[0, 0] == pytest.approx(np.sqrt(6))
    assert result.projections[10, 0] == pytest.approx(-np.sqrt(6))


def test_single_row():
    result = compute_pca(np.array([[1.0, -1.0, 0.0]]))
    assert np.allclose(result.projections, 0.0)


def test_non_finite_input_raises():
    X = random_votes()
    X[0, 0] = np.nan
    with pytest.raises(ComputationError) as exc_info:
        compute_pca(X)
    assert exc_info.value.is_retryable


def test_empty_input_raises():
    with pytest.raises(ComputationError):
        compute_pca(np.empty((0, 6)))


def test_sparsity_aware_scaling():
    X = random_votes(seed=13)
    counts = np.full(30, 8)
    counts[0] = 2

    plain = compute_pca(X)
    scaled = compute_pca(X, vote_counts=counts, sparsity_aware=True)

    assert np.allclose(scaled.projections[1:], plain.projections[1:])
    assert np.allclose(scaled.projections[0], plain.projections[0] * 2.0)


def test_sparsity_aware_needs_counts():
    with pytest.raises(ValueError):
        compute_pca(random_votes(), sparsity_aware=True)


def test_project_votes_matches_fit():
    X = random_votes(seed=17)
    result = compute_pca(X)

    point = project_votes(X[4], result.components, result.mean_vector)
    assert np.allclose(point, result.projections[4])


def test_project_votes_shape_mismatch():
    result = compute_pca(random_votes())
    with pytest.raises(ValueError):
        project_votes([1, 0, -1], result.components, result.mean_vector)
