"""
torch_hddc - High-Dimensional Data Clustering (HDDC) in PyTorch.

Gaussian mixture clustering where every component lives in its own
low-dimensional subspace plus an isotropic noise floor, fitted by EM,
with BIC-based selection of the number of clusters, the model variant and
the intrinsic dimensions.
"""

from ._exceptions import (
    ConfigurationError,
    HDDCError,
    InvalidInputError,
    NumericalDegeneracyError,
)
from ._models import MODEL_VARIANTS, ModelVariant, get_model_variant, n_parameters
from ._selection import GridScore, SelectionResult, select_model
from ._subspace import (
    CattellScreeTest,
    CumulativeVarianceThreshold,
    DimensionSelector,
    FixedDimension,
    Subspace,
    estimate_subspace,
    make_dimension_selector,
)
from ._torch_hddc_em import ClusterParams, EMState, HDDCResult, TorchHDDC

__version__ = "0.1.0"

__all__ = [
    # Estimator
    "TorchHDDC",
    "HDDCResult",
    "ClusterParams",
    "EMState",
    # Model variants
    "MODEL_VARIANTS",
    "ModelVariant",
    "get_model_variant",
    "n_parameters",
    # Intrinsic dimension
    "DimensionSelector",
    "CattellScreeTest",
    "CumulativeVarianceThreshold",
    "FixedDimension",
    "Subspace",
    "estimate_subspace",
    "make_dimension_selector",
    # Model selection
    "select_model",
    "SelectionResult",
    "GridScore",
    # Errors
    "HDDCError",
    "InvalidInputError",
    "ConfigurationError",
    "NumericalDegeneracyError",
]
