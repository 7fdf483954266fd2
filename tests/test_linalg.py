# tests/test_linalg.py
import sys
import os

# Add parent directory to path so we can import torch_hddc
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import math

import numpy as np
import torch
import pytest

from torch_hddc import NumericalDegeneracyError
from torch_hddc._linalg import (
    factored_eigh,
    numerical_rank,
    pool_scatters,
    subspace_covariance,
    subspace_log_det,
    subspace_log_gaussian,
    subspace_mahalanobis,
    subspace_precision,
    symmetric_eigh,
    weighted_scatter,
)


def _random_subspace(rng, D, d):
    Q = torch.from_numpy(np.linalg.qr(rng.randn(D, d))[0])
    a = torch.from_numpy(np.sort(2.0 + 5.0 * rng.rand(d))[::-1].copy())
    b = torch.tensor(0.5, dtype=torch.float64)
    return Q, a, b


def _align_signs(v, ref):
    """Flip eigenvector columns of v so they point like ref."""
    signs = torch.sign(torch.sum(v * ref, dim=0))
    signs[signs == 0] = 1.0
    return v * signs.unsqueeze(0)


def test_symmetric_eigh_is_descending_and_non_negative():
    rng = np.random.RandomState(0)
    A = torch.from_numpy(rng.randn(20, 6))
    vals, vecs = symmetric_eigh(A.T @ A)

    assert torch.all(vals[:-1] >= vals[1:])
    assert torch.all(vals >= 0)
    assert torch.allclose(vecs.T @ vecs, torch.eye(6, dtype=torch.float64), atol=1e-10)


def test_numerical_rank_ignores_round_off():
    vals = torch.tensor([5.0, 1.0, 1e-18, 0.0], dtype=torch.float64)
    assert numerical_rank(vals, 4) == 2
    assert numerical_rank(torch.zeros(3, dtype=torch.float64), 3) == 0


@pytest.mark.parametrize("n_samples", [5, 12])
def test_gram_path_matches_covariance_path(n_samples):
    """N < D: eigenpairs from the N x N Gram matrix equal those of A^T A."""
    rng = np.random.RandomState(1)
    D = 30
    A = torch.from_numpy(rng.randn(n_samples, D))

    vals, vecs, rank = factored_eigh(A)
    ref_vals, ref_vecs = symmetric_eigh(A.T @ A)

    assert rank == n_samples
    assert vals.shape == (n_samples,)
    assert vecs.shape == (D, n_samples)
    assert torch.allclose(vals, ref_vals[:n_samples], rtol=1e-8, atol=1e-10)

    # orthonormal and equal to the reference up to sign
    assert torch.allclose(vecs.T @ vecs, torch.eye(n_samples, dtype=torch.float64), atol=1e-8)
    ref = ref_vecs[:, :n_samples]
    assert torch.allclose(_align_signs(vecs, ref), ref, atol=1e-6)


def test_tall_factor_returns_all_pairs():
    rng = np.random.RandomState(2)
    A = torch.from_numpy(rng.randn(50, 8))
    vals, vecs, rank = factored_eigh(A)

    assert vals.shape == (8,)
    assert vecs.shape == (8, 8)
    assert rank == 8


def test_weighted_scatter_matches_biased_covariance():
    rng = np.random.RandomState(3)
    X = torch.from_numpy(rng.randn(100, 4) @ rng.randn(4, 4))
    resp = torch.ones(100, dtype=torch.float64)
    mean = X.mean(dim=0)
    reg = 1e-3

    scatter = weighted_scatter(X, resp, mean, reg_covar=reg)
    expected = torch.from_numpy(np.cov(X.numpy(), rowvar=False, bias=True)) + reg * torch.eye(4, dtype=torch.float64)

    assert torch.allclose(scatter.covariance(), expected, atol=1e-10)
    assert torch.allclose(scatter.trace, torch.trace(expected), atol=1e-10)
    assert torch.allclose(scatter.eigenvalues.sum(), scatter.trace, atol=1e-8)
    assert scatter.rank == 4
    assert scatter.weight == pytest.approx(100.0)


def test_quadratic_forms_match_explicit_covariance():
    rng = np.random.RandomState(4)
    X = torch.from_numpy(rng.randn(40, 6))
    resp = torch.from_numpy(rng.rand(40))
    mean = (resp @ X) / resp.sum()
    scatter = weighted_scatter(X, resp, mean, reg_covar=1e-4)

    Q = torch.from_numpy(np.linalg.qr(rng.randn(6, 2))[0])
    expected = torch.diagonal(Q.T @ scatter.covariance() @ Q)
    assert torch.allclose(scatter.quadratic_forms(Q), expected, atol=1e-10)


def test_zero_mass_component_raises():
    X = torch.randn(30, 5, dtype=torch.float64)
    resp = torch.zeros(30, dtype=torch.float64)

    with pytest.raises(NumericalDegeneracyError) as excinfo:
        weighted_scatter(X, resp, X.mean(dim=0), cluster=2)
    assert excinfo.value.cluster == 2


def test_pooled_scatter_is_weighted_sum():
    rng = np.random.RandomState(5)
    X = torch.from_numpy(rng.randn(60, 5))
    resp = torch.from_numpy(rng.rand(60, 2))
    resp = resp / resp.sum(dim=1, keepdim=True)
    nk = resp.sum(dim=0)
    weights = nk / nk.sum()
    means = (resp.T @ X) / nk.unsqueeze(1)

    scatters = [weighted_scatter(X, resp[:, k], means[k], reg_covar=1e-6) for k in range(2)]
    pooled = pool_scatters(scatters, weights)

    expected = weights[0] * scatters[0].covariance() + weights[1] * scatters[1].covariance()
    assert torch.allclose(pooled.covariance(), expected, atol=1e-10)
    assert torch.allclose(pooled.trace, torch.trace(expected), atol=1e-10)


@pytest.mark.parametrize("D,d", [(3, 1), (10, 3), (40, 5)])
def test_low_rank_density_matches_explicit_precision(D, d):
    rng = np.random.RandomState(6)
    Q, a, b = _random_subspace(rng, D, d)
    mean = torch.from_numpy(rng.randn(D))
    X = torch.from_numpy(rng.randn(25, D) * 2.0)

    cov = subspace_covariance(Q, a, b)
    prec = torch.linalg.inv(cov)
    diff = X - mean
    expected_mahal = torch.sum((diff @ prec) * diff, dim=1)
    sign, expected_log_det = torch.linalg.slogdet(cov)

    assert sign > 0
    assert torch.allclose(subspace_mahalanobis(X, mean, Q, a, b), expected_mahal, rtol=1e-8)
    assert torch.allclose(subspace_log_det(a, b, D), expected_log_det, atol=1e-8)
    assert torch.allclose(subspace_precision(Q, a, b), prec, atol=1e-8)

    expected_log_prob = -0.5 * (D * math.log(2 * math.pi) + expected_log_det + expected_mahal)
    assert torch.allclose(subspace_log_gaussian(X, mean, Q, a, b), expected_log_prob, atol=1e-8)


def test_subspace_covariance_eigen_structure():
    rng = np.random.RandomState(7)
    Q, a, b = _random_subspace(rng, 8, 3)
    vals = torch.linalg.eigvalsh(subspace_covariance(Q, a, b)).flip(0)

    assert torch.allclose(vals[:3], a, atol=1e-10)
    assert torch.allclose(vals[3:], b.expand(5), atol=1e-10)
