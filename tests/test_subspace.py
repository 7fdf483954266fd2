# tests/test_subspace.py
import sys
import os

# Add parent directory to path so we can import torch_hddc
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import torch
import pytest

from torch_hddc import (
    CattellScreeTest,
    ConfigurationError,
    CumulativeVarianceThreshold,
    DimensionSelector,
    FixedDimension,
    NumericalDegeneracyError,
    estimate_subspace,
    make_dimension_selector,
)
from torch_hddc._linalg import weighted_scatter
from torch_hddc._subspace import subspace_from_scatter


def _scatter(rng, n_samples, n_features, reg_covar=1e-6):
    X = torch.from_numpy(rng.randn(n_samples, n_features) * np.linspace(3.0, 0.5, n_features))
    resp = torch.ones(n_samples, dtype=torch.float64)
    return weighted_scatter(X, resp, X.mean(dim=0), reg_covar=reg_covar)


def test_scree_finds_elbow():
    eigenvalues = [10.0, 9.0, 8.0, 0.1, 0.09, 0.08, 0.07, 0.06]
    assert CattellScreeTest().select_dimension(eigenvalues) == 3


def test_scree_flat_spectrum_gives_one():
    assert CattellScreeTest().select_dimension([1.0, 1.0, 1.0, 1.0]) == 1
    assert CattellScreeTest().select_dimension([4.0]) == 1


def test_scree_ties_use_cumulative_variance():
    # two comparable drops: after 1 and after 3 eigenvalues
    eigenvalues = [100.0, 50.0, 49.0, 1.0]
    selector = CattellScreeTest(threshold=0.9, cumulative_variance=0.5)
    assert selector.select_dimension(eigenvalues) == 1

    # nothing reaches the cumulative threshold: keep the last elbow
    selector = CattellScreeTest(threshold=0.9, cumulative_variance=0.999)
    assert selector.select_dimension(eigenvalues) == 3


def test_scree_rejects_unsorted_eigenvalues():
    with pytest.raises(ValueError):
        CattellScreeTest().select_dimension([1.0, 3.0, 2.0])


@pytest.mark.parametrize("threshold", [0.0, -0.1, 1.5])
def test_scree_invalid_threshold(threshold):
    with pytest.raises(ConfigurationError):
        CattellScreeTest(threshold=threshold)


def test_cumulative_variance_threshold():
    eigenvalues = torch.tensor([5.0, 3.0, 1.0, 0.5, 0.5], dtype=torch.float64)
    assert CumulativeVarianceThreshold(0.5).select_dimension(eigenvalues) == 1
    assert CumulativeVarianceThreshold(0.8).select_dimension(eigenvalues) == 2
    assert CumulativeVarianceThreshold(1.0).select_dimension(eigenvalues) == 5


def test_make_dimension_selector():
    assert isinstance(make_dimension_selector("cattell"), CattellScreeTest)
    assert isinstance(make_dimension_selector("Variance"), CumulativeVarianceThreshold)
    assert make_dimension_selector(np.int64(3)).dim == 3

    custom = FixedDimension(2)
    assert make_dimension_selector(custom) is custom
    assert isinstance(custom, DimensionSelector)

    for bad in ("elbow", 0, True, 2.5):
        with pytest.raises(ConfigurationError):
            make_dimension_selector(bad)


def test_noise_is_mean_of_discarded_eigenvalues():
    rng = np.random.RandomState(0)
    scatter = _scatter(rng, n_samples=200, n_features=6)
    subspace = subspace_from_scatter(scatter, 2)

    assert subspace.dim == 2
    assert subspace.basis.shape == (6, 2)
    assert torch.allclose(subspace.noise_variance, scatter.eigenvalues[2:].mean(), rtol=1e-8)
    assert torch.allclose(subspace.eigenvalues, scatter.eigenvalues[:2])
    assert torch.all(subspace.eigenvalues >= subspace.noise_variance)


def test_fixed_dimension_must_be_below_n_features():
    rng = np.random.RandomState(1)
    scatter = _scatter(rng, n_samples=50, n_features=5)

    with pytest.raises(ConfigurationError):
        estimate_subspace(scatter, FixedDimension(5))
    assert estimate_subspace(scatter, FixedDimension(4)).dim == 4


def test_fixed_dimension_above_rank_is_degenerate():
    """N=4 centered samples in D=10 have rank 3, so d=3 leaves no noise."""
    rng = np.random.RandomState(2)
    scatter = _scatter(rng, n_samples=4, n_features=10)
    assert scatter.rank == 3

    with pytest.raises(NumericalDegeneracyError):
        estimate_subspace(scatter, FixedDimension(3), cluster=0)
    assert estimate_subspace(scatter, FixedDimension(2)).dim == 2


def test_selected_dimension_is_clipped_to_rank():
    rng = np.random.RandomState(3)
    scatter = _scatter(rng, n_samples=4, n_features=10)
    subspace = estimate_subspace(scatter, CumulativeVarianceThreshold(1.0))

    assert 1 <= subspace.dim <= scatter.rank - 1
    assert subspace.noise_variance > 0


def test_small_sample_subspace_uses_gram_path():
    rng = np.random.RandomState(4)
    scatter = _scatter(rng, n_samples=8, n_features=50)

    assert scatter.eigenvectors.shape == (50, scatter.rank)
    subspace = estimate_subspace(scatter, FixedDimension(3))
    assert torch.allclose(subspace.basis.T @ subspace.basis, torch.eye(3, dtype=torch.float64), atol=1e-8)
    # the discarded variance (including the null space) is spread over D - d axes
    expected = (scatter.trace - scatter.eigenvalues[:3].sum()) / 47
    assert torch.allclose(subspace.noise_variance, expected)
