# torch_hddc/_selection.py
"""Grid search over (n_components, model variant, intrinsic-dimension policy).

Every grid point is an independent fit sharing only the read-only data, so the
grid is dispatched with joblib. Scores follow the "lower is better" convention:

    BIC = -2 loglik + log(N) * n_parameters
    AIC = -2 loglik + 2 * n_parameters
    ICL = BIC + 2 * posterior entropy
"""

from __future__ import annotations

import itertools
import logging
import math
import numbers
from collections import abc
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from joblib import Parallel, delayed

from ._exceptions import ConfigurationError, NumericalDegeneracyError
from ._torch_hddc_em import TorchHDDC

logger = logging.getLogger(__name__)

_CRITERIA = ("bic", "aic", "icl")


@dataclass
class GridScore:
    n_components: int
    model: str
    dims: Any
    score: float
    log_likelihood: float = float("nan")
    n_parameters: int = 0
    fitted_dims: Tuple[int, ...] = ()
    converged: bool = False
    stop_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class SelectionResult:
    criterion: str
    best: GridScore
    best_estimator: TorchHDDC
    scores: List[GridScore] = field(default_factory=list)

    def to_records(self) -> List[Dict[str, Any]]:
        """One dict per grid point, e.g. for pandas.DataFrame(records)."""
        return [
            {
                "n_components": s.n_components,
                "model": s.model,
                "dims": s.dims,
                self.criterion: s.score,
                "log_likelihood": s.log_likelihood,
                "n_parameters": s.n_parameters,
                "fitted_dims": s.fitted_dims,
                "converged": s.converged,
                "error": s.error,
            }
            for s in self.scores
        ]


def _as_list(value, scalar_types) -> list:
    if isinstance(value, scalar_types) or not isinstance(value, abc.Iterable):
        return [value]
    return list(value)


def _criterion_value(estimator: TorchHDDC, X, criterion: str) -> float:
    if criterion == "bic":
        return estimator.bic_
    if criterion == "aic":
        return -2.0 * estimator.log_likelihood_ + 2.0 * estimator._n_parameters()
    return estimator.icl(X)


def _fit_grid_point(
    X, n_components: int, model: str, dims, criterion: str, fit_kwargs: Dict[str, Any]
) -> Tuple[GridScore, Optional[TorchHDDC]]:
    estimator = TorchHDDC(n_components=n_components, model=model, dims=dims, **fit_kwargs)
    try:
        estimator.fit(X)
    except NumericalDegeneracyError as exc:
        logger.warning("K=%d model=%s dims=%s failed: %s", n_components, model, dims, exc)
        return GridScore(n_components, estimator.variant.name, dims, math.inf, error=str(exc)), None

    score = _criterion_value(estimator, X, criterion)
    logger.info(
        "K=%d model=%s dims=%s -> %s=%.4f (loglik=%.4f, fitted dims=%s)",
        n_components, estimator.variant.name, dims, criterion, score, estimator.log_likelihood_, estimator.dims_,
    )
    return (
        GridScore(
            n_components=n_components,
            model=estimator.variant.name,
            dims=dims,
            score=float(score),
            log_likelihood=estimator.log_likelihood_,
            n_parameters=estimator._n_parameters(),
            fitted_dims=tuple(estimator.dims_),
            converged=estimator.converged_,
            stop_reason=estimator.stop_reason_,
        ),
        estimator,
    )


def select_model(
    X,
    n_components: Union[int, Iterable[int]] = (1, 2, 3, 4),
    models: Union[str, Iterable[str]] = ("AkjBkQkDk",),
    dims: Union[str, int, Sequence[Any]] = ("cattell",),
    criterion: str = "bic",
    n_jobs: Optional[int] = 1,
    **fit_kwargs,
) -> SelectionResult:
    """Fit every (n_components, model, dims) combination and keep the lowest score.

    Args:
        X: (N, D) observations, numpy array or torch tensor.
        n_components: K values to try.
        models: Model variant names or aliases.
        dims: Intrinsic-dimension policies to try; each entry is 'cattell',
            'variance', an int, or a per-cluster tuple of ints.
        criterion: 'bic' (default), 'aic' or 'icl'.
        n_jobs: joblib parallelism across grid points.
        **fit_kwargs: Forwarded to TorchHDDC (tol, max_iter, random_state, ...).

    Returns:
        SelectionResult with the best grid point, its fitted estimator and the
        scores of ALL grid points (failed ones carry score=inf and an error).

    Raises:
        ConfigurationError: unknown criterion/model or invalid dims, before any fit.
        InvalidInputError: X unusable for some grid point, before any fit.
        NumericalDegeneracyError: if every grid point degenerated.
    """
    criterion = criterion.lower()
    if criterion not in _CRITERIA:
        raise ConfigurationError(f"criterion must be one of {_CRITERIA}, got {criterion!r}")

    ks = _as_list(n_components, numbers.Integral)
    model_list = _as_list(models, str)
    dims_list = _as_list(dims, (str, numbers.Integral))
    if not ks or not model_list or not dims_list:
        raise ConfigurationError("The model grid is empty")

    grid = list(itertools.product(ks, model_list, dims_list))
    # Surface configuration and data errors before any EM run
    for k, model, d in grid:
        TorchHDDC(n_components=k, model=model, dims=d, **fit_kwargs)._validate_data(X, reset=True)

    logger.info("Selecting among %d configurations by %s", len(grid), criterion.upper())
    results = Parallel(n_jobs=n_jobs)(
        delayed(_fit_grid_point)(X, k, model, d, criterion, fit_kwargs) for k, model, d in grid
    )

    scores = [score for score, _ in results]
    fitted = [(score, est) for score, est in results if est is not None and math.isfinite(score.score)]
    if not fitted:
        raise NumericalDegeneracyError("Every configuration of the grid degenerated")

    best, best_estimator = min(fitted, key=lambda item: item[0].score)
    logger.info(
        "Best configuration: K=%d model=%s dims=%s %s=%.4f",
        best.n_components, best.model, best.dims, criterion, best.score,
    )
    return SelectionResult(criterion=criterion, best=best, best_estimator=best_estimator, scores=scores)
