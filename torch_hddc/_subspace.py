# torch_hddc/_subspace.py
"""Per-cluster subspace estimation and intrinsic-dimension selection.

A cluster covariance is summarized by its top-d eigenpairs (Q, a) and one
noise variance b, the MEAN of all discarded eigenvalues:

    b = (trace(S) - sum_{j<=d} a_j) / (D - d)

Computing b from the trace means the discarded eigenvalues never have to be
computed, which is what makes the N < D Gram path in _linalg usable.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Union, runtime_checkable

import torch

from ._exceptions import ConfigurationError, NumericalDegeneracyError
from ._linalg import Scatter


@dataclass(frozen=True)
class Subspace:
    basis: torch.Tensor  # (D, d), orthonormal columns
    eigenvalues: torch.Tensor  # (d,), each >= noise_variance
    noise_variance: torch.Tensor  # scalar
    dim: int


# ---------------------------
# Dimension selection strategies
# ---------------------------

@runtime_checkable
class DimensionSelector(Protocol):
    """Anything that maps a descending eigenvalue sequence to an intrinsic dimension."""

    def select_dimension(self, eigenvalues: torch.Tensor) -> int:
        ...


def _as_descending(eigenvalues: Union[torch.Tensor, Sequence[float]]) -> torch.Tensor:
    ev = torch.as_tensor(eigenvalues, dtype=torch.float64).flatten()
    if ev.numel() > 1 and bool((ev[:-1] < ev[1:]).any()):
        raise ValueError("Eigenvalues should be sorted in descending order.")
    return ev


class CattellScreeTest:
    """Cattell's scree test on the eigenvalue differences.

    Every position j whose drop  lambda_j - lambda_{j+1}  is at least
    ``threshold * max_drop`` is a candidate elbow; the dimension is the number
    of eigenvalues before that drop. With a single candidate it is returned.
    When several elbows are plausible, the smallest one explaining at least
    ``cumulative_variance`` of the total variance wins, otherwise the last one
    (Cattell's original rule).

    This is a heuristic: there is no optimality guarantee. ``threshold=0.2``
    is the usual HDDC default; larger values keep more dimensions.

    References
    ----------
    - Cattell, R. B. (1966). The Scree Test For The Number Of Factors.
    - Bouveyron, C., Girard, S., Schmid, C. (2007). High-dimensional data clustering.
    """

    def __init__(self, threshold: float = 0.2, cumulative_variance: float = 0.95) -> None:
        if not 0.0 < threshold <= 1.0:
            raise ConfigurationError(f"threshold must be in (0, 1], got {threshold}")
        if not 0.0 < cumulative_variance <= 1.0:
            raise ConfigurationError(f"cumulative_variance must be in (0, 1], got {cumulative_variance}")
        self.threshold = threshold
        self.cumulative_variance = cumulative_variance

    def select_dimension(self, eigenvalues) -> int:
        ev = _as_descending(eigenvalues)
        if ev.numel() < 2:
            return 1

        drops = ev[:-1] - ev[1:]
        top = drops.max()
        if top <= 0:
            # flat spectrum
            return 1

        candidates = (torch.nonzero(drops >= self.threshold * top).flatten() + 1).tolist()
        if len(candidates) == 1:
            return int(candidates[0])

        explained = torch.cumsum(ev, dim=0) / ev.sum()
        for d in candidates:
            if explained[d - 1] >= self.cumulative_variance:
                return int(d)
        return int(candidates[-1])

    def __repr__(self) -> str:
        return f"CattellScreeTest(threshold={self.threshold}, cumulative_variance={self.cumulative_variance})"


class CumulativeVarianceThreshold:
    """Smallest d whose leading eigenvalues explain ``threshold`` of the variance."""

    def __init__(self, threshold: float = 0.9) -> None:
        if not 0.0 < threshold <= 1.0:
            raise ConfigurationError(f"threshold must be in (0, 1], got {threshold}")
        self.threshold = threshold

    def select_dimension(self, eigenvalues) -> int:
        ev = _as_descending(eigenvalues)
        if ev.numel() == 0 or ev.sum() <= 0:
            return 1
        explained = torch.cumsum(ev, dim=0) / ev.sum()
        reached = torch.nonzero(explained >= self.threshold - 1e-12).flatten()
        return int(reached[0].item()) + 1 if reached.numel() else int(ev.numel())

    def __repr__(self) -> str:
        return f"CumulativeVarianceThreshold(threshold={self.threshold})"


class FixedDimension:
    """A user-imposed intrinsic dimension."""

    def __init__(self, dim: int) -> None:
        if isinstance(dim, bool) or int(dim) != dim or dim < 1:
            raise ConfigurationError(f"Intrinsic dimension must be a positive integer, got {dim!r}")
        self.dim = int(dim)

    def select_dimension(self, eigenvalues) -> int:
        return self.dim

    def __repr__(self) -> str:
        return f"FixedDimension({self.dim})"


DimPolicy = Union[str, int, DimensionSelector]


def make_dimension_selector(
    policy: Optional[DimPolicy] = "cattell",
    threshold: float = 0.2,
    cumulative_variance: float = 0.95,
) -> DimensionSelector:
    """Resolve 'cattell' | 'variance' | int | selector object to a DimensionSelector."""
    if policy is None or (isinstance(policy, str) and policy.lower() == "cattell"):
        return CattellScreeTest(threshold=threshold, cumulative_variance=cumulative_variance)
    if isinstance(policy, str):
        if policy.lower() == "variance":
            return CumulativeVarianceThreshold(threshold=cumulative_variance)
        raise ConfigurationError(f"Unknown dimension selector {policy!r}; use 'cattell', 'variance' or an int")
    if isinstance(policy, bool):
        raise ConfigurationError(f"Invalid intrinsic dimension {policy!r}")
    if isinstance(policy, numbers.Integral):
        return FixedDimension(policy)
    if isinstance(policy, DimensionSelector):
        return policy
    raise ConfigurationError(f"Cannot interpret {policy!r} as an intrinsic dimension policy")


# ---------------------------
# Subspace estimation
# ---------------------------

def subspace_from_scatter(scatter: Scatter, dim: int, cluster: Optional[int] = None) -> Subspace:
    """Keep the top `dim` eigenpairs; collapse the rest into the noise variance."""
    D = scatter.n_features
    eigvals = scatter.eigenvalues[:dim]
    basis = scatter.eigenvectors[:, :dim]

    noise = (scatter.trace - eigvals.sum()) / (D - dim)
    if not bool(torch.isfinite(noise)) or noise <= 0:
        raise NumericalDegeneracyError(
            f"Component {cluster} has non-positive noise variance {float(noise):.3g} for d={dim}",
            cluster=cluster,
        )

    # subspace directions carry at least the noise floor
    eigvals = torch.maximum(eigvals, noise)
    return Subspace(basis=basis, eigenvalues=eigvals, noise_variance=noise, dim=int(dim))


def estimate_subspace(
    scatter: Scatter,
    policy: DimensionSelector,
    cluster: Optional[int] = None,
) -> Subspace:
    """Subspace parameters (Q, a, b, d) of one weighted covariance.

    A FixedDimension must satisfy  1 <= d < D  (ConfigurationError otherwise)
    and  d < rank  (NumericalDegeneracyError otherwise). Selected dimensions are
    clipped to  [1, min(D - 1, rank - 1)].
    """
    D = scatter.n_features
    if isinstance(policy, FixedDimension):
        dim = policy.dim
        if dim >= D:
            raise ConfigurationError(f"Intrinsic dimension {dim} must be smaller than n_features={D}")
        if dim >= scatter.rank:
            raise NumericalDegeneracyError(
                f"Component {cluster}: requested d={dim} but covariance rank is {scatter.rank}",
                cluster=cluster,
            )
        return subspace_from_scatter(scatter, dim, cluster=cluster)

    max_dim = min(D - 1, scatter.rank - 1)
    if max_dim < 1:
        raise NumericalDegeneracyError(
            f"Component {cluster}: covariance rank {scatter.rank} leaves no room for a subspace",
            cluster=cluster,
        )
    dim = int(policy.select_dimension(scatter.eigenvalues[: scatter.rank]))
    dim = min(max(dim, 1), max_dim)
    return subspace_from_scatter(scatter, dim, cluster=cluster)
