"""
Linear model module for the DGE Pipeline.

One linear model is fitted per gene by weighted least squares, all genes
at once with batched linear algebra. The fitted object carries the
coefficients, their unscaled standard deviations, the residual standard
deviation and degrees of freedom, so that contrasts and empirical Bayes
moderation can be computed without refitting.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Union

import numpy as np
import pandas as pd

from .exceptions import DesignMatrixError

logger = logging.getLogger(__name__)


@dataclass
class FittedModel:
    """Per-gene linear model fit, optionally moderated by ebayes()."""

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    cov_coefficients: pd.DataFrame
    cov_unscaled: np.ndarray
    design: pd.DataFrame
    contrasts: Optional[pd.DataFrame] = None

    # Filled in by ebayes()
    s2_prior: Any = None
    df_prior: Optional[float] = None
    s2_post: Optional[pd.Series] = None
    df_total: Optional[pd.Series] = None
    t: Optional[pd.DataFrame] = None
    p_value: Optional[pd.DataFrame] = None
    lods: Optional[pd.DataFrame] = None
    var_prior: Optional[np.ndarray] = None
    F: Optional[pd.Series] = None
    F_p_value: Optional[pd.Series] = None
    proportion: float = field(default=0.01)
    trend: bool = False

    @property
    def genes(self) -> pd.Index:
        return self.coefficients.index

    @property
    def coef_names(self) -> list:
        return list(self.coefficients.columns)

    @property
    def is_moderated(self) -> bool:
        return self.t is not None

    def resolve_coef(self, coef: Union[int, str]) -> str:
        """Coefficient name for a name or zero-based position."""
        if isinstance(coef, (int, np.integer)):
            if not 0 <= coef < len(self.coef_names):
                raise IndexError(f"Coefficient index {coef} out of range")
            return self.coef_names[coef]
        if coef not in self.coef_names:
            raise KeyError(f"Coefficient '{coef}' not found; available: {self.coef_names}")
        return coef


def _check_design(samples: pd.Index, design: Union[pd.DataFrame, np.ndarray]) -> pd.DataFrame:
    if not isinstance(design, pd.DataFrame):
        design = np.asarray(design, dtype=np.float64)
        if design.ndim != 2:
            raise DesignMatrixError("design must be a 2D matrix")
        design = pd.DataFrame(
            design, index=samples, columns=[f"x{i}" for i in range(design.shape[1])]
        )

    if design.shape[0] != len(samples):
        raise DesignMatrixError(
            f"Design has {design.shape[0]} rows but expression has {len(samples)} samples"
        )
    if not isinstance(design.index, pd.RangeIndex) and list(design.index.astype(str)) != list(samples.astype(str)):
        raise DesignMatrixError("Design rows are not in the same sample order as the expression columns")
    if not np.all(np.isfinite(design.to_numpy(dtype=np.float64))):
        raise DesignMatrixError("Design matrix contains missing or infinite values")
    return design


def lm_fit(
    expression: Any,
    design: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    weights: Optional[Union[pd.DataFrame, np.ndarray]] = None
) -> FittedModel:
    """
    Fit a weighted linear model for each gene.

    Args:
        expression: Log-expression DataFrame (genes x samples), or a
            VoomResult whose expression, weights and design are used
        design: Design matrix (samples x coefficients)
        weights: Precision weights with the shape of expression

    Returns:
        FittedModel
    """
    if hasattr(expression, 'E') and hasattr(expression, 'weights'):
        if weights is None:
            weights = expression.weights
        if design is None:
            design = expression.design
        expression = expression.E

    if design is None:
        raise DesignMatrixError("A design matrix is required")

    y = expression.to_numpy(dtype=np.float64)
    if not np.all(np.isfinite(y)):
        raise ValueError("Expression values must be finite")

    design = _check_design(expression.columns, design)
    x = design.to_numpy(dtype=np.float64)
    n_genes, n_samples = y.shape
    n_coef = x.shape[1]

    rank = int(np.linalg.matrix_rank(x))
    if rank < n_coef:
        raise DesignMatrixError("Design matrix is not of full column rank")

    xtx_inv = np.linalg.inv(x.T @ x)

    if weights is None:
        logger.info(f"Fitting ordinary least squares for {n_genes} genes")
        w = np.ones_like(y)
        beta = np.linalg.lstsq(x, y.T, rcond=None)[0].T
        cov_unscaled = np.broadcast_to(xtx_inv, (n_genes, n_coef, n_coef)).copy()
    else:
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != y.shape:
            raise ValueError(f"weights shape {w.shape} does not match expression shape {y.shape}")
        if np.any(~np.isfinite(w)) or np.any(w <= 0):
            raise ValueError("weights must be finite and positive")
        logger.info(f"Fitting weighted least squares for {n_genes} genes")
        xtwx = np.einsum('sp,gs,sq->gpq', x, w, x)
        xtwy = np.einsum('sp,gs,gs->gp', x, w, y)
        cov_unscaled = np.linalg.inv(xtwx)
        beta = np.einsum('gpq,gq->gp', cov_unscaled, xtwy)

    resid = y - beta @ x.T
    df_resid = n_samples - rank
    if df_resid > 0:
        sigma = np.sqrt(np.sum(w * resid * resid, axis=1) / df_resid)
    else:
        sigma = np.full(n_genes, np.nan)

    genes = expression.index
    coef_names = list(design.columns)
    stdev = np.sqrt(np.diagonal(cov_unscaled, axis1=1, axis2=2))

    return FittedModel(
        coefficients=pd.DataFrame(beta, index=genes, columns=coef_names),
        stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=coef_names),
        sigma=pd.Series(sigma, index=genes, name='sigma'),
        df_residual=pd.Series(float(df_resid), index=genes, name='df_residual'),
        amean=pd.Series(y.mean(axis=1), index=genes, name='AveExpr'),
        cov_coefficients=pd.DataFrame(xtx_inv, index=coef_names, columns=coef_names),
        cov_unscaled=cov_unscaled,
        design=design,
    )


def contrasts_fit(
    fit: FittedModel,
    contrasts: Union[pd.DataFrame, np.ndarray]
) -> FittedModel:
    """
    Re-express a fit in terms of contrasts between coefficients.

    The contrast standard errors use each gene's own unscaled covariance
    matrix, so they are exact for weighted fits.

    Args:
        fit: Result of lm_fit()
        contrasts: Matrix (coefficients x contrasts), e.g. from make_contrasts()

    Returns:
        New FittedModel whose coefficients are the contrasts
    """
    if isinstance(contrasts, pd.DataFrame):
        unknown = [c for c in contrasts.index if c not in fit.coef_names]
        absent = [c for c in fit.coef_names if c not in contrasts.index]
        if unknown or absent:
            raise DesignMatrixError(
                f"Contrast rows do not match coefficients (unknown: {unknown}; missing: {absent})"
            )
        contrasts = contrasts.loc[fit.coef_names]
    else:
        arr = np.asarray(contrasts, dtype=np.float64)
        if arr.ndim == 1:
            arr = arr[:, None]
        if arr.shape[0] != len(fit.coef_names):
            raise DesignMatrixError(
                f"Contrast matrix has {arr.shape[0]} rows but the fit has {len(fit.coef_names)} coefficients"
            )
        contrasts = pd.DataFrame(
            arr, index=fit.coef_names, columns=[f"contrast{i + 1}" for i in range(arr.shape[1])]
        )

    if fit.is_moderated:
        logger.warning("Discarding empirical Bayes results; run ebayes() again after contrasts_fit()")

    c = contrasts.to_numpy(dtype=np.float64)
    names = list(contrasts.columns)

    coef = fit.coefficients.to_numpy() @ c
    cov_unscaled = np.einsum('pc,gpq,qd->gcd', c, fit.cov_unscaled, c)
    stdev = np.sqrt(np.diagonal(cov_unscaled, axis1=1, axis2=2))
    cov_coef = c.T @ fit.cov_coefficients.to_numpy() @ c

    logger.info(f"Computed {len(names)} contrast(s): {names}")
    return replace(
        fit,
        coefficients=pd.DataFrame(coef, index=fit.genes, columns=names),
        stdev_unscaled=pd.DataFrame(stdev, index=fit.genes, columns=names),
        cov_coefficients=pd.DataFrame(cov_coef, index=names, columns=names),
        cov_unscaled=cov_unscaled,
        contrasts=contrasts,
        s2_prior=None, df_prior=None, s2_post=None, df_total=None,
        t=None, p_value=None, lods=None, var_prior=None, F=None, F_p_value=None,
    )


def subset_coefficients(fit: FittedModel, coefs: list) -> FittedModel:
    """Restrict a fit to some of its coefficients, dropping eBayes results."""
    names = [fit.resolve_coef(c) for c in coefs]
    idx = [fit.coef_names.index(n) for n in names]
    return replace(
        fit,
        coefficients=fit.coefficients[names],
        stdev_unscaled=fit.stdev_unscaled[names],
        cov_coefficients=fit.cov_coefficients.loc[names, names],
        cov_unscaled=fit.cov_unscaled[:, idx][:, :, idx],
        contrasts=None if fit.contrasts is None else fit.contrasts[names],
        s2_prior=None, df_prior=None, s2_post=None, df_total=None,
        t=None, p_value=None, lods=None, var_prior=None, F=None, F_p_value=None,
    )
