# torch_hddc/_models.py
"""HDDC model variants: which covariance parameters are shared across clusters.

Names follow Bouveyron et al. (2007): a_kj per-cluster per-axis signal
variances, a_k isotropic signal variance, b_k per-cluster noise, Q_k
per-cluster orientation, D_k per-cluster intrinsic dimension. Dropping the
index k means the parameter is common to all clusters.

Orientation families:
- free:   Q_k estimated per cluster from its own scatter S_k
- common: one Q from the pooled within-cluster scatter W = sum_k pi_k S_k,
          eigenvalues a_kj = q_j^T S_k q_j stay per cluster
- shared: Q, a and b all taken from W (a single covariance: AjBQD keeps
          per-axis a_j, ABQD collapses them to one a)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import torch

from ._exceptions import ConfigurationError, NumericalDegeneracyError
from ._linalg import Scatter, pool_scatters
from ._subspace import DimensionSelector, FixedDimension, Subspace, estimate_subspace


@dataclass(frozen=True)
class ModelVariant:
    name: str
    orientation: str  # "free" | "common" | "shared"
    isotropic_signal: bool = False
    common_noise: bool = False

    @property
    def common_dim(self) -> bool:
        return self.orientation != "free"


MODEL_VARIANTS: Dict[str, ModelVariant] = {
    v.name.lower(): v
    for v in (
        ModelVariant("AkjBkQkDk", "free"),
        ModelVariant("AkjBQkDk", "free", common_noise=True),
        ModelVariant("AkBkQkDk", "free", isotropic_signal=True),
        ModelVariant("AkBQkDk", "free", isotropic_signal=True, common_noise=True),
        ModelVariant("AkjBkQD", "common"),
        ModelVariant("AkjBQD", "common", common_noise=True),
        ModelVariant("AkBkQD", "common", isotropic_signal=True),
        ModelVariant("AkBQD", "common", isotropic_signal=True, common_noise=True),
        ModelVariant("AjBQD", "shared", common_noise=True),
        ModelVariant("ABQD", "shared", isotropic_signal=True, common_noise=True),
    )
}

_ALIASES = {
    "free": "akjbkqkdk",
    "free_orientation": "akjbkqkdk",
    "common_orientation": "akjbkqd",
    "common_covariance": "ajbqd",
}


def get_model_variant(model: Union[str, ModelVariant]) -> ModelVariant:
    """Look a variant up by name or alias (case-insensitive)."""
    if isinstance(model, ModelVariant):
        return model
    if not isinstance(model, str):
        raise ConfigurationError(f"model must be a string, got {type(model).__name__}")
    key = model.lower()
    key = _ALIASES.get(key, key)
    if key not in MODEL_VARIANTS:
        known = sorted(v.name for v in MODEL_VARIANTS.values())
        raise ConfigurationError(f"Unknown model={model!r}; expected one of {known} or {sorted(_ALIASES)}")
    return MODEL_VARIANTS[key]


def _common_policy(policies: Sequence[DimensionSelector]) -> DimensionSelector:
    first = policies[0]
    for p in policies[1:]:
        same_fixed = (
            isinstance(p, FixedDimension) and isinstance(first, FixedDimension) and p.dim == first.dim
        )
        if p is not first and not same_fixed:
            raise ConfigurationError(
                f"Common-orientation models need one intrinsic dimension for all clusters, got {list(policies)}"
            )
    return first


def _project_on_basis(scatters: Sequence[Scatter], basis: torch.Tensor) -> List[Subspace]:
    """a_kj = q_j^T S_k q_j and b_k from the trace, for a basis shared by all clusters."""
    D, d = basis.shape
    subspaces = []
    for k, s in enumerate(scatters):
        eigvals = s.quadratic_forms(basis)
        noise = (s.trace - eigvals.sum()) / (D - d)
        if not bool(torch.isfinite(noise)) or noise <= 0:
            raise NumericalDegeneracyError(
                f"Component {k} has non-positive noise variance on the common subspace", cluster=k
            )
        subspaces.append(Subspace(basis=basis, eigenvalues=eigvals, noise_variance=noise, dim=d))
    return subspaces


def _apply_sharing(variant: ModelVariant, subspaces: List[Subspace], weights: torch.Tensor) -> List[Subspace]:
    D = subspaces[0].basis.shape[0]
    if variant.common_noise:
        # b = sum_k pi_k (tr S_k - sum_j a_kj) / sum_k pi_k (D - d_k)
        free_dims = torch.tensor([D - s.dim for s in subspaces], device=weights.device, dtype=weights.dtype)
        noises = torch.stack([s.noise_variance for s in subspaces])
        noise = torch.sum(weights * free_dims * noises) / torch.sum(weights * free_dims)
        subspaces = [Subspace(s.basis, s.eigenvalues, noise, s.dim) for s in subspaces]

    if variant.isotropic_signal:
        subspaces = [
            Subspace(s.basis, s.eigenvalues.mean().expand(s.dim).clone(), s.noise_variance, s.dim)
            for s in subspaces
        ]

    return [
        Subspace(s.basis, torch.maximum(s.eigenvalues, s.noise_variance), s.noise_variance, s.dim)
        for s in subspaces
    ]


def expected_complete_log_likelihood(
    scatters: Sequence[Scatter], weights: torch.Tensor, subspaces: Sequence[Subspace]
) -> torch.Tensor:
    """Covariance-dependent part of the EM objective, per unit of sample mass.

    sum_k pi_k * -0.5 [log|Sigma_k| + tr(Sigma_k^{-1} S_k)], evaluated through
    the eigen-factors. Means and proportions do not depend on the covariances,
    so comparing two subspace fits on the same scatters only needs this term.
    """
    total = torch.zeros((), device=weights.device, dtype=weights.dtype)
    for w, scatter, s in zip(weights, scatters, subspaces):
        D = scatter.n_features
        proj = scatter.quadratic_forms(s.basis)
        log_det = torch.sum(torch.log(s.eigenvalues)) + (D - s.dim) * torch.log(s.noise_variance)
        trace_term = torch.sum(proj / s.eigenvalues) + (scatter.trace - proj.sum()) / s.noise_variance
        total = total - 0.5 * w * (log_det + trace_term)
    return total


def fit_subspaces(
    variant: ModelVariant,
    scatters: Sequence[Scatter],
    weights: torch.Tensor,
    policies: Sequence[DimensionSelector],
    previous: Optional[Sequence[Subspace]] = None,
) -> List[Subspace]:
    """Final (possibly pooled) subspace parameters of every cluster.

    For a common orientation the basis of the pooled scatter W is not the exact
    maximizer of the EM objective. When `previous` subspaces of the same
    dimension are given, their basis is refitted too and whichever basis scores
    higher under expected_complete_log_likelihood is kept (generalized EM), so
    the log-likelihood cannot decrease.
    """
    K = len(scatters)

    if variant.orientation == "free":
        subspaces = [estimate_subspace(s, policies[k], cluster=k) for k, s in enumerate(scatters)]
        return _apply_sharing(variant, subspaces, weights)

    pooled = estimate_subspace(pool_scatters(scatters, weights), _common_policy(policies))
    if variant.orientation == "shared":
        return _apply_sharing(variant, [pooled] * K, weights)

    candidate = _apply_sharing(variant, _project_on_basis(scatters, pooled.basis), weights)
    if previous is None or previous[0].dim != pooled.dim:
        return candidate

    kept = _apply_sharing(variant, _project_on_basis(scatters, previous[0].basis), weights)
    if expected_complete_log_likelihood(scatters, weights, kept) > expected_complete_log_likelihood(
        scatters, weights, candidate
    ):
        return kept
    return candidate


def n_parameters(variant: ModelVariant, dims: Sequence[int], n_features: int) -> int:
    """Number of free parameters of a fitted HDDC model (used by BIC/AIC/ICL).

    means + proportions:  K*D + K - 1
    orientation:          sum_k [d_k D - d_k (d_k + 1) / 2]   (once for common Q)
    signal variances:     sum_k d_k | K | K d | d   depending on sharing
    noise variances:      K or 1
    intrinsic dims:       K or 1
    """
    K = len(dims)
    D = int(n_features)
    p = K * D + K - 1

    if variant.orientation == "free":
        p += sum(d * D - d * (d + 1) // 2 for d in dims)
        p += K if variant.isotropic_signal else sum(dims)
        p += K  # one intrinsic dimension per cluster
    else:
        d = dims[0]
        p += d * D - d * (d + 1) // 2
        if variant.orientation == "shared":
            p += 1 if variant.isotropic_signal else d
        else:
            p += K if variant.isotropic_signal else K * d
        p += 1

    p += 1 if variant.common_noise else K
    return int(p)
