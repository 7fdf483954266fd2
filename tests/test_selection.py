# tests/test_selection.py
import sys
import os

# Make torch_hddc and the shared test data importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import math

import numpy as np
import pytest

from subspace_data import SubspaceData
from torch_hddc import (
    ConfigurationError,
    InvalidInputError,
    NumericalDegeneracyError,
    SelectionResult,
    TorchHDDC,
    select_model,
)


@pytest.fixture(scope="module")
def data():
    rng = np.random.RandomState(0)
    return SubspaceData(rng, n_samples=300, n_components=3, n_features=10, dim=2)


def test_selects_minimum_bic_over_k(data):
    result = select_model(data.X, n_components=(2, 3, 4), dims=(2,), random_state=0)

    assert isinstance(result, SelectionResult)
    assert result.criterion == "bic"
    assert [s.n_components for s in result.scores] == [2, 3, 4]
    assert all(math.isfinite(s.score) for s in result.scores)
    assert result.best.score == min(s.score for s in result.scores)
    assert result.best.n_components == 3
    assert isinstance(result.best_estimator, TorchHDDC)
    assert result.best_estimator.bic_ == pytest.approx(result.best.score)

    for s in result.scores:
        print(f"\nK={s.n_components} model={s.model} bic={s.score:.3f} loglik={s.log_likelihood:.3f}")


def test_grid_over_models_and_dims(data):
    result = select_model(
        data.X,
        n_components=3,
        models=("AkjBkQkDk", "common_covariance"),
        dims=("cattell", 2),
        random_state=0,
    )

    assert len(result.scores) == 4
    assert {s.model for s in result.scores} == {"AkjBkQkDk", "AjBQD"}
    assert {s.dims for s in result.scores} == {"cattell", 2}
    assert result.best.model == "AkjBkQkDk"


@pytest.mark.parametrize("criterion", ["aic", "icl"])
def test_other_criteria(data, criterion):
    result = select_model(data.X, n_components=(2, 3), dims=2, criterion=criterion, random_state=0)

    assert result.criterion == criterion
    assert result.best.n_components == 3
    best = result.best_estimator
    expected = best.aic(data.X) if criterion == "aic" else best.icl(data.X)
    assert result.best.score == pytest.approx(expected, rel=1e-8)


def test_degenerate_grid_point_is_recorded(data):
    # ~2 points per cluster cannot support a 2-dimensional subspace
    result = select_model(data.X, n_components=(3, 150), dims=2, random_state=0)

    failed = [s for s in result.scores if s.failed]
    assert len(failed) == 1
    assert failed[0].n_components == 150
    assert failed[0].score == math.inf
    assert result.best.n_components == 3

    records = result.to_records()
    assert len(records) == 2
    assert records[1]["error"] is not None


def test_every_grid_point_degenerate_raises(data):
    with pytest.raises(NumericalDegeneracyError):
        select_model(data.X, n_components=(150,), dims=2, random_state=0)


def test_parallel_matches_sequential(data):
    sequential = select_model(data.X, n_components=(2, 3), dims=2, random_state=0, n_jobs=1)
    parallel = select_model(data.X, n_components=(2, 3), dims=2, random_state=0, n_jobs=2)

    assert [s.score for s in parallel.scores] == pytest.approx([s.score for s in sequential.scores])


def test_configuration_errors_surface_before_fitting(data):
    with pytest.raises(ConfigurationError):
        select_model(data.X, criterion="likelihood")
    with pytest.raises(ConfigurationError):
        select_model(data.X, models=("AkjBkQkDk", "not_a_model"))
    with pytest.raises(ConfigurationError):
        select_model(data.X, n_components=(), dims=2)


def test_data_errors_surface_before_fitting(data, monkeypatch):
    fits = []
    original_fit = TorchHDDC.fit

    def counting_fit(self, X):
        fits.append(self.n_components)
        return original_fit(self, X)

    monkeypatch.setattr(TorchHDDC, "fit", counting_fit)

    # K=30 cannot be fitted on 20 samples
    with pytest.raises(InvalidInputError):
        select_model(data.X[:20], n_components=(2, 30), dims=2)
    # d=10 is not below n_features
    with pytest.raises(ConfigurationError):
        select_model(data.X, n_components=2, dims=(2, 10))
    X = data.X.copy()
    X[0, 0] = np.nan
    with pytest.raises(InvalidInputError):
        select_model(X, n_components=2, dims=2)

    assert fits == []
