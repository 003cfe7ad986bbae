"""
Variance-weighting transform (voom) for the DGE Pipeline.

Counts are converted to log2 counts per million, a linear model is fitted
to every gene, and a lowess curve of sqrt(residual SD) against average log
count gives the mean-variance trend. Each observation's precision weight
is the inverse of the trend's predicted variance at its fitted count.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from .exceptions import InputFormatError
from .linear_model import lm_fit
from .normalization import effective_lib_size

logger = logging.getLogger(__name__)

_EPS = 1e-8


@dataclass
class VoomResult:
    """Log-CPM expression with observation-level precision weights."""

    E: pd.DataFrame
    weights: pd.DataFrame
    design: pd.DataFrame
    lib_size: pd.Series
    trend_x: Optional[np.ndarray] = None
    trend_y: Optional[np.ndarray] = None
    trend_line: Optional[pd.DataFrame] = None
    span: float = 0.5


def _intercept_design(samples: pd.Index) -> pd.DataFrame:
    return pd.DataFrame({'Intercept': np.ones(len(samples))}, index=samples)


def _mean_variance_trend(sx: np.ndarray, sy: np.ndarray, span: float) -> pd.DataFrame:
    """Lowess trend of sy on sx with duplicated x values averaged."""
    x_range = float(np.max(sx) - np.min(sx))
    line = lowess(sy, sx, frac=span, it=3, delta=0.01 * x_range, return_sorted=True)
    ux, inverse = np.unique(line[:, 0], return_inverse=True)
    uy = np.bincount(inverse, weights=line[:, 1]) / np.bincount(inverse)
    return pd.DataFrame({'x': ux, 'y': np.clip(uy, _EPS, None)})


def voom(
    counts: pd.DataFrame,
    design: Optional[pd.DataFrame] = None,
    lib_size: Optional[Sequence[float]] = None,
    norm_factors: Optional[Union[pd.Series, Sequence[float]]] = None,
    span: float = 0.5
) -> VoomResult:
    """
    Transform counts to log-CPM and estimate precision weights.

    Args:
        counts: Filtered count matrix (genes x samples)
        design: Design matrix (default: intercept only)
        lib_size: Library sizes (default: column sums)
        norm_factors: Normalization factors applied to library sizes
        span: Lowess span for the mean-variance trend

    Returns:
        VoomResult with log-CPM values, weights and the fitted trend

    Raises:
        InputFormatError: If there are fewer than two genes or counts are negative
    """
    if counts.shape[0] < 2:
        raise InputFormatError("Need at least two genes to fit a mean-variance trend")

    x = counts.to_numpy(dtype=np.float64)
    if np.isnan(x).any():
        raise InputFormatError("NA counts not allowed")
    if x.min() < 0:
        raise InputFormatError("Negative counts not allowed")

    if design is None:
        design = _intercept_design(counts.columns)

    lib = effective_lib_size(counts, norm_factors, lib_size)
    lib_arr = lib.to_numpy()

    logger.info(f"voom: transforming {counts.shape[0]} genes x {counts.shape[1]} samples")
    y = np.log2((x + 0.5) / (lib_arr[None, :] + 1) * 1e6)
    expr = pd.DataFrame(y, index=counts.index, columns=counts.columns)

    fit = lm_fit(expr, design)
    n_with_reps = int((fit.df_residual > 0).sum())
    if n_with_reps < 2:
        if n_with_reps == 0:
            logger.warning("The experimental design has no replication. Setting weights to 1.")
        else:
            logger.warning("Only one gene with any replication. Setting weights to 1.")
        weights = pd.DataFrame(np.ones_like(y), index=counts.index, columns=counts.columns)
        return VoomResult(E=expr, weights=weights, design=fit.design, lib_size=lib, span=span)

    sx = fit.amean.to_numpy() + np.mean(np.log2(lib_arr + 1)) - np.log2(1e6)
    sy = np.sqrt(fit.sigma.to_numpy())

    allzero = x.sum(axis=1) == 0
    if allzero.any():
        logger.debug(f"Excluding {int(allzero.sum())} all-zero genes from the trend")
    trend = _mean_variance_trend(sx[~allzero], sy[~allzero], span)

    fitted_values = fit.coefficients.to_numpy() @ fit.design.to_numpy().T
    fitted_count = 1e-6 * np.exp2(fitted_values) * (lib_arr[None, :] + 1)
    fitted_logcount = np.log2(fitted_count)
    w = 1.0 / np.interp(fitted_logcount, trend['x'].to_numpy(), trend['y'].to_numpy()) ** 4

    weights = pd.DataFrame(w, index=counts.index, columns=counts.columns)
    logger.info(
        f"voom: weights range {w.min():.3g} - {w.max():.3g} "
        f"(trend over {int((~allzero).sum())} genes, span {span})"
    )
    return VoomResult(
        E=expr,
        weights=weights,
        design=fit.design,
        lib_size=lib,
        trend_x=sx,
        trend_y=sy,
        trend_line=trend,
        span=span,
    )
