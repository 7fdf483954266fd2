# torch_hddc/_linalg.py
"""Linear algebra kernel for subspace-constrained Gaussians.

Everything the EM loop needs from linear algebra goes through here:

- eigen-decomposition of (weighted) covariance estimates, sorted descending;
- the N < D regime, where the p x p covariance is rank deficient: we then
  decompose the N x N Gram matrix of the weighted, centered data and map the
  eigenvectors back, so only the non-null eigenpairs are ever computed;
- log-determinant and Mahalanobis distance of a covariance given by its
  eigen-factors  Sigma = Q diag(a) Q^T + b (I - Q Q^T),  without forming it.

reg_covar is ADDED to every eigenvalue (i.e. to the diagonal), the same way
sklearn regularizes full covariances.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import torch

from ._exceptions import NumericalDegeneracyError


# ---------------------------
# Eigen helpers
# ---------------------------

def symmetric_eigh(S: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Eigenpairs of a symmetric PSD matrix, eigenvalues sorted descending.

    Round-off negatives are clamped to zero.
    """
    S = 0.5 * (S + S.transpose(-1, -2))
    vals, vecs = torch.linalg.eigh(S)
    vals = torch.flip(vals, dims=(-1,)).clamp_min(0.0)
    vecs = torch.flip(vecs, dims=(-1,))
    return vals, vecs


def numerical_rank(eigvals: torch.Tensor, size: int) -> int:
    """Number of eigenvalues above  max(eigvals) * size * eps  (numpy's matrix_rank rule)."""
    if eigvals.numel() == 0:
        return 0
    top = eigvals.max()
    if not torch.isfinite(top) or top <= 0:
        return 0
    tol = top * size * torch.finfo(eigvals.dtype).eps
    return int((eigvals > tol).sum().item())


def factored_eigh(A: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, int]:
    """Eigenpairs of A^T A (descending) without forming it when A is wide.

    Returns (eigvals, eigvecs (D, m), rank). With A of shape (n, D) and n < D only
    the non-null pairs are returned (m = rank), otherwise all D pairs.
    """
    n, D = A.shape
    if n < D:
        gram_vals, U = symmetric_eigh(A @ A.T)  # (n,), (n,n)
        rank = numerical_rank(gram_vals, D)
        gram_vals = gram_vals[:rank]
        U = U[:, :rank]
        # A^T A (A^T u) = lambda (A^T u),  ||A^T u||^2 = lambda
        vecs = (A.T @ U) / torch.sqrt(gram_vals).unsqueeze(0)
        return gram_vals, vecs, rank

    vals, vecs = symmetric_eigh(A.T @ A)
    return vals, vecs, numerical_rank(vals, max(n, D))


# ---------------------------
# Weighted scatter of one component
# ---------------------------

@dataclass
class Scatter:
    """Eigen-decomposed weighted covariance  S = A^T A + reg_covar * I.

    `factor` is A, the sqrt-weighted centered data (scaled by 1/sqrt(n_k)),
    kept so projections q^T S q can be computed in O(N D) without S.
    """

    factor: torch.Tensor
    eigenvalues: torch.Tensor  # (m,) descending, ridge included
    eigenvectors: torch.Tensor  # (D, m)
    trace: torch.Tensor  # scalar, ridge included
    weight: float
    rank: int
    reg_covar: float

    @property
    def n_features(self) -> int:
        return int(self.factor.shape[1])

    def quadratic_forms(self, basis: torch.Tensor) -> torch.Tensor:
        """diag(Q^T S Q) for an orthonormal basis Q (D, d)."""
        proj = self.factor @ basis
        return torch.sum(proj * proj, dim=0) + self.reg_covar

    def covariance(self) -> torch.Tensor:
        D = self.n_features
        eye = torch.eye(D, device=self.factor.device, dtype=self.factor.dtype)
        return self.factor.T @ self.factor + self.reg_covar * eye


def weighted_scatter(
    X: torch.Tensor,
    resp_k: torch.Tensor,
    mean_k: torch.Tensor,
    reg_covar: float = 1e-6,
    min_weight: float = 1.0,
    cluster: Optional[int] = None,
) -> Scatter:
    """Responsibility-weighted covariance of one component, eigen-decomposed.

    Raises NumericalDegeneracyError when the component carries (almost) no mass.
    """
    nk = float(resp_k.sum().item())
    if not math.isfinite(nk) or nk < min_weight:
        raise NumericalDegeneracyError(
            f"Component {cluster} has effective weight {nk:.3g} < min_cluster_weight={min_weight}",
            cluster=cluster,
        )

    D = X.shape[1]
    diff = X - mean_k.unsqueeze(0)  # (N,D)
    A = diff * torch.sqrt(resp_k / nk).unsqueeze(1)  # (N,D), S = A^T A

    vals, vecs, rank = factored_eigh(A)
    trace = torch.sum(A * A)

    if not (torch.isfinite(vals).all() and torch.isfinite(trace)):
        raise NumericalDegeneracyError(
            f"Component {cluster} produced a non-finite covariance estimate", cluster=cluster
        )

    return Scatter(
        factor=A,
        eigenvalues=vals + reg_covar,
        eigenvectors=vecs,
        trace=trace + D * reg_covar,
        weight=nk,
        rank=rank,
        reg_covar=reg_covar,
    )


def pool_scatters(scatters: Sequence[Scatter], weights: torch.Tensor) -> Scatter:
    """Within-cluster pooled scatter  W = sum_k pi_k S_k  (weights sum to one)."""
    factors = [torch.sqrt(w) * s.factor for w, s in zip(weights, scatters)]
    B = torch.cat(factors, dim=0)  # (K*N, D)
    reg_covar = scatters[0].reg_covar
    D = B.shape[1]

    vals, vecs, rank = factored_eigh(B)
    trace = torch.sum(B * B)
    return Scatter(
        factor=B,
        eigenvalues=vals + reg_covar,
        eigenvectors=vecs,
        trace=trace + D * reg_covar,
        weight=float(sum(s.weight for s in scatters)),
        rank=rank,
        reg_covar=reg_covar,
    )


# ---------------------------
# Subspace Gaussian: determinant, distance, explicit matrices
# ---------------------------

def subspace_log_det(eigvals: torch.Tensor, noise: torch.Tensor, n_features: int) -> torch.Tensor:
    """log|Sigma| = sum_j log a_j + (D - d) log b."""
    d = eigvals.shape[0]
    return torch.sum(torch.log(eigvals)) + (n_features - d) * torch.log(noise)


def subspace_mahalanobis(
    X: torch.Tensor,
    mean: torch.Tensor,
    basis: torch.Tensor,
    eigvals: torch.Tensor,
    noise: torch.Tensor,
) -> torch.Tensor:
    """Squared Mahalanobis distance (N,) using the low-rank structure, O(N D d)."""
    diff = X - mean.unsqueeze(0)  # (N,D)
    proj = diff @ basis  # (N,d)
    signal = torch.sum(proj * proj / eigvals.unsqueeze(0), dim=1)
    # residual energy orthogonal to the subspace
    resid = (torch.sum(diff * diff, dim=1) - torch.sum(proj * proj, dim=1)).clamp_min(0.0)
    return signal + resid / noise


def subspace_log_gaussian(
    X: torch.Tensor,
    mean: torch.Tensor,
    basis: torch.Tensor,
    eigvals: torch.Tensor,
    noise: torch.Tensor,
) -> torch.Tensor:
    """log N(X | mean, Q diag(a) Q^T + b (I - Q Q^T)), shape (N,)."""
    D = X.shape[1]
    mahal = subspace_mahalanobis(X, mean, basis, eigvals, noise)
    log_det = subspace_log_det(eigvals, noise, D)
    return -0.5 * (D * math.log(2 * math.pi) + log_det + mahal)


def subspace_covariance(basis: torch.Tensor, eigvals: torch.Tensor, noise: torch.Tensor) -> torch.Tensor:
    """Explicit D x D covariance from the eigen-factors."""
    D = basis.shape[0]
    eye = torch.eye(D, device=basis.device, dtype=basis.dtype)
    return (basis * (eigvals - noise).unsqueeze(0)) @ basis.T + noise * eye


def subspace_precision(basis: torch.Tensor, eigvals: torch.Tensor, noise: torch.Tensor) -> torch.Tensor:
    """Explicit D x D inverse covariance from the eigen-factors."""
    D = basis.shape[0]
    eye = torch.eye(D, device=basis.device, dtype=basis.dtype)
    return (basis * (1.0 / eigvals - 1.0 / noise).unsqueeze(0)) @ basis.T + eye / noise
