# torch_hddc/_torch_hddc_em.py
"""High-Dimensional Data Clustering (HDDC) EM in PyTorch (sklearn-shaped).

Each mixture component k is a Gaussian whose covariance is constrained to

    Sigma_k = Q_k diag(a_k) Q_k^T + b_k (I - Q_k Q_k^T)

i.e. d_k signal directions Q_k with variances a_k, plus one isotropic noise
variance b_k on the orthogonal complement. The E-step never forms Sigma_k:
log-densities use the eigen-factors directly (O(N D d_k) per component).

Alignment with the sklearn-style GMM this is modelled on:
- reg_covar is ADDED (not clamped) to the covariance diagonal in the M-step.
- nk smoothing uses: nk = resp.sum(0) + 10 * eps(dtype).
- Default init_params is 'kmeans' (k-means++ seeding followed by Lloyd).
- Fitted attributes carry a trailing underscore; lower_bounds_ keeps the
  per-iteration log-likelihood history.

Differences:
- All randomness goes through a torch.Generator seeded from random_state;
  the global torch RNG is never touched.
- Convergence is on the RELATIVE change of the total log-likelihood.
- A cluster whose weighted covariance collapses raises NumericalDegeneracyError,
  or is dropped when drop_degenerate=True.

Initialization options:
- 'kmeans': PyTorch k-means++ followed by Lloyd iterations
- 'k-means++': PyTorch k-means++ seeding only (no refinement)
- 'random': random hard partition
- 'scikit_kmeans': sklearn's KMeans partition
- init_labels: a user-supplied partition (overrides init_params)
"""

from __future__ import annotations

import logging
import math
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from ._exceptions import ConfigurationError, InvalidInputError, NumericalDegeneracyError
from ._linalg import subspace_covariance, subspace_log_gaussian, subspace_precision, weighted_scatter
from ._models import ModelVariant, fit_subspaces, get_model_variant, n_parameters
from ._subspace import DimensionSelector, FixedDimension, Subspace, make_dimension_selector

logger = logging.getLogger(__name__)

_INIT_METHODS = ("kmeans", "k-means++", "random", "scikit_kmeans")


class EMState(str, Enum):
    INITIALIZED = "initialized"
    E_STEP = "e_step"
    M_STEP = "m_step"
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"
    FAILED = "failed"


# ---------------------------
# Utilities
# ---------------------------

def _nk_eps(dtype: torch.dtype) -> float:
    """Match sklearn's nk smoothing: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _one_hot_log_resp(labels: torch.Tensor, K: int, dtype: torch.dtype) -> torch.Tensor:
    N = labels.shape[0]
    resp = torch.zeros((N, K), device=labels.device, dtype=dtype)
    resp[torch.arange(N, device=labels.device), labels] = 1.0
    return _safe_log(resp)


def _drop_component(log_resp: torch.Tensor, k: int) -> torch.Tensor:
    """Remove column k and renormalize; rows left with no mass become uniform."""
    resp = log_resp.exp()
    keep = [j for j in range(resp.shape[1]) if j != k]
    resp = resp[:, keep]
    row_sums = resp.sum(dim=1, keepdim=True)
    orphan = row_sums.squeeze(1) <= torch.finfo(resp.dtype).tiny
    if orphan.any():
        resp[orphan] = 1.0
        row_sums = resp.sum(dim=1, keepdim=True)
    return _safe_log(resp / row_sums)


# ---------------------------
# Model parameters
# ---------------------------

@dataclass
class HDDCParams:
    weights: torch.Tensor  # (K,)
    means: torch.Tensor  # (K, D)
    subspaces: List[Subspace]

    @property
    def dims(self) -> List[int]:
        return [s.dim for s in self.subspaces]


# ---------------------------
# EM steps
# ---------------------------

def _estimate_weighted_log_prob(X: torch.Tensor, params: HDDCParams) -> torch.Tensor:
    """log pi_k + log N(x_i | mu_k, Sigma_k), shape (N, K)."""
    cols = [
        subspace_log_gaussian(X, params.means[k], s.basis, s.eigenvalues, s.noise_variance)
        for k, s in enumerate(params.subspaces)
    ]
    return torch.stack(cols, dim=1) + _safe_log(params.weights).unsqueeze(0)


def _expectation_step(X: torch.Tensor, params: HDDCParams) -> Tuple[torch.Tensor, torch.Tensor]:
    """E-step. Returns (total log-likelihood, log_resp (N,K))."""
    weighted_log_prob = _estimate_weighted_log_prob(X, params)
    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)
    return log_prob_norm.sum(), log_resp


def _maximization_step(
    X: torch.Tensor,
    log_resp: torch.Tensor,
    variant: ModelVariant,
    policies: Sequence[DimensionSelector],
    reg_covar: float = 1e-6,
    min_cluster_weight: float = 1.0,
    previous: Optional[Sequence[Subspace]] = None,
) -> HDDCParams:
    """M-step: proportions, means, then subspaces pooled per the model variant.

    `previous` are the subspaces of the last iteration; common-orientation
    models keep their basis when it scores higher than the pooled one.
    """
    N, D = X.shape
    K = log_resp.shape[1]
    resp = log_resp.exp()  # (N,K)

    nk = resp.sum(dim=0) + _nk_eps(resp.dtype)  # (K,)
    weights = nk / nk.sum()
    means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)

    scatters = [
        weighted_scatter(X, resp[:, k], means[k], reg_covar, min_cluster_weight, cluster=k)
        for k in range(K)
    ]
    subspaces = fit_subspaces(variant, scatters, weights, policies, previous=previous)
    return HDDCParams(weights=weights, means=means, subspaces=subspaces)


# ---------------------------
# Initialization helpers
# ---------------------------

@torch.no_grad()
def _kmeans_plus_plus_init_centroids(X: torch.Tensor, K: int, generator: torch.Generator) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape
    centroids = torch.empty((K, D), device=X.device, dtype=X.dtype)

    i0 = torch.randint(0, N, (1,), device=X.device, generator=generator).item()
    centroids[0] = X[i0]

    # Closest squared dist to any chosen centroid so far
    closest_d2 = torch.sum((X - centroids[0]) ** 2, dim=1)  # (N,)

    for k in range(1, K):
        total = closest_d2.sum()
        if total > 0:
            idx = torch.multinomial(closest_d2 / total, 1, generator=generator).item()
        else:
            idx = torch.randint(0, N, (1,), device=X.device, generator=generator).item()
        centroids[k] = X[idx]
        closest_d2 = torch.minimum(closest_d2, torch.sum((X - centroids[k]) ** 2, dim=1))

    return centroids


@torch.no_grad()
def _kmeans_lloyd_with_init(
    X: torch.Tensor,
    centroids: torch.Tensor,
    generator: torch.Generator,
    n_iter: int = 10,
) -> torch.Tensor:
    """Run Lloyd iterations starting from provided centroids. Returns labels (N,)."""
    N, D = X.shape
    K = centroids.shape[0]

    labels = torch.argmin(torch.cdist(X, centroids), dim=1)
    for _ in range(n_iter):
        counts = torch.zeros((K,), device=X.device, dtype=X.dtype)
        sums = torch.zeros((K, D), device=X.device, dtype=X.dtype)
        counts.scatter_add_(0, labels, torch.ones((N,), device=X.device, dtype=X.dtype))
        sums.scatter_add_(0, labels.unsqueeze(1).expand(N, D), X)

        # Reseed empty clusters on random points
        empty_mask = counts == 0
        if empty_mask.any():
            n_empty = int(empty_mask.sum().item())
            random_idx = torch.randint(0, N, (n_empty,), device=X.device, generator=generator)
            sums[empty_mask] = X[random_idx]
            counts[empty_mask] = 1.0

        centroids = sums / counts.unsqueeze(1)
        new_labels = torch.argmin(torch.cdist(X, centroids), dim=1)
        if torch.equal(new_labels, labels):
            break
        labels = new_labels

    return labels


@torch.no_grad()
def _initialize_from_sklearn(X: torch.Tensor, K: int, seed: int) -> torch.Tensor:
    """sklearn KMeans partition. Returns labels (N,)."""
    labels = KMeans(n_clusters=K, n_init=1, random_state=seed).fit(X.cpu().numpy()).labels_
    return torch.as_tensor(labels, device=X.device, dtype=torch.long)


# ---------------------------
# Exported snapshots
# ---------------------------

def _readonly(t: torch.Tensor) -> np.ndarray:
    arr = t.detach().cpu().numpy().copy()
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class ClusterParams:
    """Final parameters of one component."""

    weight: float
    mean: np.ndarray  # (D,)
    basis: np.ndarray  # (D, d)
    eigenvalues: np.ndarray  # (d,)
    noise_variance: float
    dim: int


@dataclass(frozen=True)
class HDDCResult:
    """Immutable snapshot of a fitted model, see TorchHDDC.export()."""

    labels: np.ndarray  # (N,)
    responsibilities: np.ndarray  # (N, K)
    log_likelihood: float
    bic: float
    converged: bool
    stop_reason: str
    n_iter: int
    model: str
    clusters: Tuple[ClusterParams, ...] = field(default_factory=tuple)

    @property
    def n_components(self) -> int:
        return len(self.clusters)


@dataclass
class _EMRun:
    params: HDDCParams
    log_resp: torch.Tensor
    log_likelihood: float
    history: List[float]
    n_iter: int
    converged: bool
    stop_reason: str


# ---------------------------
# Model wrapper
# ---------------------------

class TorchHDDC:
    """Sklearn-shaped HDDC estimator in PyTorch.

    Parameters
    ----------
    n_components : int
        Number of clusters K.
    model : str
        Model variant name or alias, see torch_hddc.MODEL_VARIANTS
        ('AkjBkQkDk' = free orientation, 'AkjBkQD' = common orientation,
        'AjBQD' = common covariance, 'ABQD' = isotropic common covariance, ...).
    dims : 'cattell' | 'variance' | int | sequence of int | DimensionSelector
        Intrinsic dimension policy. A sequence gives one fixed d_k per cluster.
    dim_threshold : float
        Threshold of Cattell's scree test.
    cumulative_variance : float
        Explained-variance threshold ('variance' policy, scree tie-break).
    tol : float
        Relative log-likelihood change below which EM stops.
    reg_covar : float
        Ridge added to every covariance eigenvalue.
    min_cluster_weight : float
        Effective number of points under which a cluster is degenerate.
    drop_degenerate : bool
        Drop degenerate clusters and continue instead of raising.
    check_monotonic : bool
        Raise RuntimeError if the log-likelihood decreases by more than tol.
        Iterations where the intrinsic dimensions change are not compared.
    dim_burn_in : int, optional
        Iterations after which selected intrinsic dimensions are frozen
        (None keeps re-selecting them at every M-step).
    max_time : float, optional
        Wall-clock budget in seconds for each EM run.
    cancel_event : object with is_set(), optional
        Checked between iterations, e.g. a threading.Event.
    """

    def __init__(
        self,
        n_components: int,
        model: Union[str, ModelVariant] = "AkjBkQkDk",
        dims: Union[str, int, Sequence[int], DimensionSelector] = "cattell",
        dim_threshold: float = 0.2,
        cumulative_variance: float = 0.95,
        tol: float = 1e-6,
        reg_covar: float = 1e-6,
        min_cluster_weight: float = 1.0,
        max_iter: int = 200,
        n_init: int = 1,
        init_params: str = "kmeans",
        kmeans_iter: int = 10,
        init_labels=None,
        random_state: Optional[int] = None,
        drop_degenerate: bool = False,
        check_monotonic: bool = False,
        dim_burn_in: Optional[int] = 10,
        max_time: Optional[float] = None,
        cancel_event=None,
        device=None,
        dtype: Optional[torch.dtype] = torch.float64,
    ) -> None:
        if isinstance(n_components, bool) or int(n_components) != n_components or n_components <= 0:
            raise InvalidInputError(f"n_components must be a positive integer, got {n_components!r}")
        if tol <= 0:
            raise ConfigurationError("tol must be positive")
        if reg_covar < 0:
            raise ConfigurationError("reg_covar must be non-negative")
        if min_cluster_weight < 0:
            raise ConfigurationError("min_cluster_weight must be non-negative")
        if max_iter <= 0:
            raise ConfigurationError("max_iter must be positive")
        if n_init <= 0:
            raise ConfigurationError("n_init must be positive")
        if init_params not in _INIT_METHODS:
            raise ConfigurationError(f"init_params must be one of {_INIT_METHODS}, got {init_params!r}")
        if max_time is not None and max_time <= 0:
            raise ConfigurationError("max_time must be positive")
        if dim_burn_in is not None and (
            isinstance(dim_burn_in, bool) or int(dim_burn_in) != dim_burn_in or dim_burn_in <= 0
        ):
            raise ConfigurationError(f"dim_burn_in must be a positive integer or None, got {dim_burn_in!r}")

        self.n_components = int(n_components)
        self.model = model
        self.variant = get_model_variant(model)
        self.dims = dims
        self.dim_threshold = dim_threshold
        self.cumulative_variance = cumulative_variance
        self.tol = tol
        self.reg_covar = reg_covar
        self.min_cluster_weight = min_cluster_weight
        self.max_iter = max_iter
        self.n_init = n_init
        self.init_params = init_params
        self.kmeans_iter = kmeans_iter
        self.init_labels = init_labels
        self.random_state = random_state
        self.drop_degenerate = drop_degenerate
        self.check_monotonic = check_monotonic
        self.dim_burn_in = dim_burn_in
        self.max_time = max_time
        self.cancel_event = cancel_event
        self.device = device
        self.dtype = dtype

        # Resolved eagerly so bad dims fail before any data is seen
        self._policies = self._resolve_policies()

        # sklearn-like fitted attributes
        self.weights_: Optional[torch.Tensor] = None
        self.means_: Optional[torch.Tensor] = None
        self.bases_: Optional[List[torch.Tensor]] = None
        self.eigenvalues_: Optional[List[torch.Tensor]] = None
        self.noise_variances_: Optional[torch.Tensor] = None
        self.dims_: Optional[List[int]] = None
        self.labels_: Optional[torch.Tensor] = None
        self.responsibilities_: Optional[torch.Tensor] = None

        self.n_components_: int = 0
        self.n_features_in_: int = 0
        self.n_samples_: int = 0
        self.converged_: bool = False
        self.stop_reason_: Optional[str] = None
        self.state_: Optional[EMState] = None
        self.n_iter_: int = 0
        self.log_likelihood_: float = float("-inf")
        self.lower_bound_: float = float("-inf")
        self.lower_bounds_: List[float] = []
        self.bic_: float = float("inf")

        self._params: Optional[HDDCParams] = None

    # -----------------------
    # Configuration helpers
    # -----------------------

    def _resolve_policies(self) -> List[DimensionSelector]:
        K = self.n_components
        if isinstance(self.dims, (list, tuple, np.ndarray, torch.Tensor)):
            dims = [int(d) for d in self.dims]
            if len(dims) != K:
                raise ConfigurationError(f"dims has {len(dims)} entries, expected n_components={K}")
            if self.variant.common_dim and len(set(dims)) > 1:
                raise ConfigurationError(
                    f"model={self.variant.name} shares one intrinsic dimension, got dims={dims}"
                )
            return [FixedDimension(d) for d in dims]
        selector = make_dimension_selector(self.dims, self.dim_threshold, self.cumulative_variance)
        return [selector] * K

    def _to_device_dtype(self, X) -> torch.Tensor:
        X = torch.as_tensor(X)
        if self.device is not None:
            X = X.to(self.device)
        if self.dtype is not None:
            X = X.to(self.dtype)
        elif not torch.is_floating_point(X):
            X = X.to(torch.get_default_dtype())
        return X

    def _validate_data(self, X, reset: bool) -> torch.Tensor:
        try:
            X = self._to_device_dtype(X)
        except (TypeError, ValueError, RuntimeError) as exc:
            raise InvalidInputError(f"X could not be converted to a numeric tensor: {exc}") from exc
        if X.dim() != 2:
            raise InvalidInputError(f"X must be 2-D (n_samples, n_features), got shape {tuple(X.shape)}")
        if not torch.isfinite(X).all():
            raise InvalidInputError("X contains NaN or Inf")

        N, D = X.shape
        if reset:
            if N < 2:
                raise InvalidInputError(f"Need at least 2 samples, got {N}")
            if D < 2:
                raise InvalidInputError(f"Need at least 2 features for a subspace model, got {D}")
            if self.n_components > N:
                raise InvalidInputError(f"n_components={self.n_components} exceeds n_samples={N}")
            for policy in self._policies:
                if isinstance(policy, FixedDimension) and policy.dim >= D:
                    raise ConfigurationError(
                        f"Intrinsic dimension {policy.dim} must be smaller than n_features={D}"
                    )
        elif D != self.n_features_in_:
            raise InvalidInputError(f"X has {D} features, model was fitted with {self.n_features_in_}")
        return X

    def _check_init_labels(self, X: torch.Tensor) -> Optional[torch.Tensor]:
        if self.init_labels is None:
            return None
        labels = torch.as_tensor(np.asarray(self.init_labels), device=X.device).flatten()
        if labels.shape[0] != X.shape[0]:
            raise InvalidInputError("init_labels must have one entry per sample")
        if labels.dtype.is_floating_point or labels.min() < 0 or labels.max() >= self.n_components:
            raise InvalidInputError(f"init_labels must be integers in [0, {self.n_components})")
        return labels.long()

    def _check_is_fitted(self) -> HDDCParams:
        if self._params is None:
            raise RuntimeError("Model is not fitted yet.")
        return self._params

    # -----------------------
    # EM driver
    # -----------------------

    @torch.no_grad()
    def _initial_log_resp(
        self, X: torch.Tensor, generator: torch.Generator, labels: Optional[torch.Tensor]
    ) -> torch.Tensor:
        N = X.shape[0]
        K = self.n_components

        if labels is None:
            if self.init_params in ("kmeans", "k-means++"):
                centroids = _kmeans_plus_plus_init_centroids(X, K, generator)
                if self.init_params == "kmeans":
                    labels = _kmeans_lloyd_with_init(X, centroids, generator, n_iter=self.kmeans_iter)
                else:
                    labels = torch.argmin(torch.cdist(X, centroids), dim=1)
            elif self.init_params == "random":
                labels = torch.randint(0, K, (N,), device=X.device, generator=generator)
                # every cluster gets at least one point
                perm = torch.randperm(N, device=X.device, generator=generator)
                labels[perm[:K]] = torch.arange(K, device=X.device)
            else:
                seed = int(torch.randint(0, 2**31 - 1, (1,), device=X.device, generator=generator).item())
                labels = _initialize_from_sklearn(X, K, seed)

        return _one_hot_log_resp(labels, K, X.dtype)

    def _m_step_with_recovery(
        self,
        X: torch.Tensor,
        log_resp: torch.Tensor,
        policies: List[DimensionSelector],
        previous: Optional[List[Subspace]] = None,
    ) -> Tuple[HDDCParams, torch.Tensor, List[DimensionSelector], bool]:
        dropped = False
        while True:
            try:
                params = _maximization_step(
                    X,
                    log_resp,
                    self.variant,
                    policies,
                    reg_covar=self.reg_covar,
                    min_cluster_weight=self.min_cluster_weight,
                    previous=previous,
                )
                return params, log_resp, policies, dropped
            except NumericalDegeneracyError as exc:
                K = log_resp.shape[1]
                if not self.drop_degenerate or exc.cluster is None or K <= 1:
                    self.state_ = EMState.FAILED
                    raise
                logger.warning(
                    "Dropping degenerate component %d (%s); continuing with %d components",
                    exc.cluster, exc, K - 1,
                )
                log_resp = _drop_component(log_resp, exc.cluster)
                policies = policies[: exc.cluster] + policies[exc.cluster + 1:]
                previous = None
                dropped = True

    @torch.no_grad()
    def _run_em(
        self, X: torch.Tensor, generator: torch.Generator, labels: Optional[torch.Tensor]
    ) -> _EMRun:
        self.state_ = EMState.INITIALIZED
        log_resp = self._initial_log_resp(X, generator, labels)
        params, log_resp, policies, _ = self._m_step_with_recovery(X, log_resp, list(self._policies))

        history: List[float] = []
        prev_ll: Optional[float] = None
        converged = False
        stop_reason = "max_iter"
        started = time.monotonic()

        for it in range(self.max_iter):
            if self.cancel_event is not None and self.cancel_event.is_set():
                stop_reason = "cancelled"
                break
            if self.max_time is not None and time.monotonic() - started > self.max_time:
                stop_reason = "timeout"
                break

            self.state_ = EMState.E_STEP
            ll_t, log_resp = _expectation_step(X, params)
            ll = float(ll_t.item())
            if not math.isfinite(ll):
                self.state_ = EMState.FAILED
                raise NumericalDegeneracyError(f"Log-likelihood became non-finite at iteration {it + 1}")
            history.append(ll)

            if prev_ll is not None:
                change = ll - prev_ll
                logger.debug("iter %d: log-likelihood %.6f (change %.3e) dims=%s", it + 1, ll, change, params.dims)
                if self.check_monotonic and change < -self.tol * abs(ll):
                    self.state_ = EMState.FAILED
                    raise RuntimeError(
                        f"Log-likelihood decreased at iteration {it + 1}: {prev_ll} -> {ll}"
                    )
                if abs(change) <= self.tol * abs(ll):
                    converged = True
                    stop_reason = "tol"
                    break
            prev_ll = ll

            if (
                self.dim_burn_in is not None
                and it + 1 >= self.dim_burn_in
                and not all(isinstance(p, FixedDimension) for p in policies)
            ):
                logger.debug("iter %d: freezing intrinsic dimensions at %s", it + 1, params.dims)
                policies = [FixedDimension(d) for d in params.dims]

            self.state_ = EMState.M_STEP
            prev_dims = params.dims
            params, log_resp, policies, dropped = self._m_step_with_recovery(
                X, log_resp, policies, previous=params.subspaces
            )
            if dropped:
                # likelihoods of different K are not comparable
                prev_ll = None
            elif params.dims != prev_dims:
                # nor are likelihoods of different model dimensions
                logger.debug("iter %d: intrinsic dimensions changed %s -> %s", it + 1, prev_dims, params.dims)
                prev_ll = None

        if not converged:
            # align responsibilities and likelihood with the last M-step
            ll_t, log_resp = _expectation_step(X, params)
            ll = float(ll_t.item())
        else:
            ll = history[-1]

        return _EMRun(
            params=params,
            log_resp=log_resp,
            log_likelihood=ll,
            history=history,
            n_iter=len(history),
            converged=converged,
            stop_reason=stop_reason,
        )

    # -----------------------
    # Public API
    # -----------------------

    @torch.no_grad()
    def fit(self, X) -> "TorchHDDC":
        X = self._validate_data(X, reset=True)
        labels = self._check_init_labels(X)
        N, D = X.shape

        generator = torch.Generator(device=X.device)
        if self.random_state is None:
            generator.seed()
        else:
            generator.manual_seed(int(self.random_state))

        n_init = 1 if labels is not None else self.n_init
        best: Optional[_EMRun] = None
        for _ in range(n_init):
            run = self._run_em(X, generator, labels)
            if best is None or run.log_likelihood > best.log_likelihood:
                best = run

        assert best is not None
        p = best.params
        self._params = p
        self.n_samples_ = N
        self.n_features_in_ = D
        self.n_components_ = len(p.subspaces)

        self.weights_ = p.weights
        self.means_ = p.means
        self.bases_ = [s.basis for s in p.subspaces]
        self.eigenvalues_ = [s.eigenvalues for s in p.subspaces]
        self.noise_variances_ = torch.stack([s.noise_variance for s in p.subspaces])
        self.dims_ = p.dims

        self.responsibilities_ = best.log_resp.exp()
        self.labels_ = torch.argmax(self.responsibilities_, dim=1)

        self.log_likelihood_ = best.log_likelihood
        self.lower_bound_ = best.log_likelihood
        self.lower_bounds_ = best.history
        self.n_iter_ = best.n_iter
        self.converged_ = best.converged
        self.stop_reason_ = best.stop_reason
        self.state_ = EMState.CONVERGED if best.converged else EMState.NOT_CONVERGED
        self.bic_ = -2.0 * best.log_likelihood + math.log(N) * self._n_parameters()

        if best.converged:
            logger.info(
                "HDDC %s K=%d converged in %d iterations, log-likelihood %.4f, dims=%s",
                self.variant.name, self.n_components_, self.n_iter_, self.log_likelihood_, self.dims_,
            )
        else:
            msg = (
                f"HDDC {self.variant.name} K={self.n_components_} did not converge "
                f"({best.stop_reason} after {best.n_iter} iterations)"
            )
            logger.warning(msg)
            if best.stop_reason == "max_iter":
                warnings.warn(msg + "; try increasing max_iter or tol", ConvergenceWarning)

        return self

    def _n_parameters(self) -> int:
        p = self._check_is_fitted()
        return n_parameters(self.variant, p.dims, self.n_features_in_)

    @torch.no_grad()
    def score_samples(self, X) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        p = self._check_is_fitted()
        X = self._validate_data(X, reset=False)
        return torch.logsumexp(_estimate_weighted_log_prob(X, p), dim=1)

    @torch.no_grad()
    def score(self, X) -> torch.Tensor:
        """Mean log-likelihood."""
        return self.score_samples(X).mean()

    @torch.no_grad()
    def predict_proba(self, X) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        p = self._check_is_fitted()
        X = self._validate_data(X, reset=False)
        _, log_resp = _expectation_step(X, p)
        return log_resp.exp()

    @torch.no_grad()
    def predict(self, X) -> torch.Tensor:
        # argmax returns the first maximal index: ties go to the lowest cluster
        return torch.argmax(self.predict_proba(X), dim=1)

    def fit_predict(self, X) -> torch.Tensor:
        return self.fit(X).labels_

    @torch.no_grad()
    def aic(self, X) -> float:
        """Akaike information criterion."""
        ll = float(self.score_samples(X).sum().item())
        return 2.0 * self._n_parameters() - 2.0 * ll

    @torch.no_grad()
    def bic(self, X) -> float:
        """Bayesian information criterion."""
        self._check_is_fitted()
        X = self._validate_data(X, reset=False)
        ll = float(self.score_samples(X).sum().item())
        return math.log(X.shape[0]) * self._n_parameters() - 2.0 * ll

    @torch.no_grad()
    def icl(self, X) -> float:
        """Integrated completed likelihood: BIC plus twice the posterior entropy."""
        resp = self.predict_proba(X)
        entropy = -float(torch.sum(resp * _safe_log(resp)).item())
        return self.bic(X) + 2.0 * entropy

    @property
    def covariances_(self) -> torch.Tensor:
        """Explicit (K, D, D) covariances rebuilt from the eigen-factors."""
        p = self._check_is_fitted()
        return torch.stack([subspace_covariance(s.basis, s.eigenvalues, s.noise_variance) for s in p.subspaces])

    @property
    def precisions_(self) -> torch.Tensor:
        p = self._check_is_fitted()
        return torch.stack([subspace_precision(s.basis, s.eigenvalues, s.noise_variance) for s in p.subspaces])

    def export(self) -> HDDCResult:
        """Read-only snapshot of the fitted model for downstream consumers."""
        p = self._check_is_fitted()
        clusters = tuple(
            ClusterParams(
                weight=float(p.weights[k].item()),
                mean=_readonly(p.means[k]),
                basis=_readonly(s.basis),
                eigenvalues=_readonly(s.eigenvalues),
                noise_variance=float(s.noise_variance.item()),
                dim=s.dim,
            )
            for k, s in enumerate(p.subspaces)
        )
        return HDDCResult(
            labels=_readonly(self.labels_),
            responsibilities=_readonly(self.responsibilities_),
            log_likelihood=self.log_likelihood_,
            bic=self.bic_,
            converged=self.converged_,
            stop_reason=self.stop_reason_,
            n_iter=self.n_iter_,
            model=self.variant.name,
            clusters=clusters,
        )

    @torch.no_grad()
    def sample(self, n_samples: int, random_state: Optional[int] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Sample from the mixture.

        Returns:
          X: (n_samples, D)
          labels: (n_samples,)
        """
        p = self._check_is_fitted()
        if n_samples <= 0:
            raise ValueError("n_samples must be positive")

        device, dtype = p.means.device, p.means.dtype
        generator = torch.Generator(device=device)
        if random_state is None:
            generator.seed()
        else:
            generator.manual_seed(int(random_state))

        D = p.means.shape[1]
        labels = torch.multinomial(p.weights, n_samples, replacement=True, generator=generator)
        X_out = torch.empty((n_samples, D), device=device, dtype=dtype)
        for k, s in enumerate(p.subspaces):
            mask = labels == k
            n_k = int(mask.sum().item())
            if n_k == 0:
                continue
            z = torch.randn((n_k, D), device=device, dtype=dtype, generator=generator)
            coords = z @ s.basis  # (n_k, d)
            # rescale the subspace part, keep sqrt(b) on the complement
            noise_sd = torch.sqrt(s.noise_variance)
            X_out[mask] = (
                p.means[k]
                + noise_sd * z
                + (coords * (torch.sqrt(s.eigenvalues) - noise_sd)) @ s.basis.T
            )
        return X_out, labels
