"""
Empirical Bayes moderation for the DGE Pipeline.

Gene-wise residual variances are treated as draws from a scaled inverse
chi-square prior whose scale and degrees of freedom are estimated from
all genes at once. Each gene's variance is then shrunk towards the prior,
giving moderated t-statistics with extra degrees of freedom, B-statistics
(log-odds of differential expression) and moderated F-statistics.
"""

import logging
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import patsy
from scipy import stats
from scipy.special import digamma, polygamma

from .linear_model import FittedModel

logger = logging.getLogger(__name__)


def logmdigamma(x):
    """log(x) - digamma(x)."""
    x = np.asarray(x, dtype=np.float64)
    return np.log(x) - digamma(x)


def trigamma_inverse(x: float) -> float:
    """
    Solve trigamma(y) = x for y by Newton's method.

    Args:
        x: Positive target value

    Returns:
        y such that trigamma(y) is x
    """
    x = float(x)
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1 - tri / x) / float(polygamma(2, y))
        y = y + dif
        if -dif / y < 1e-8:
            break
    else:
        logger.warning("trigamma_inverse: iteration limit exceeded")
    return y


def _spline_basis(covariate: np.ndarray, df: int) -> np.ndarray:
    """Natural cubic spline basis (including the constant) with df columns."""
    if df <= 2:
        return np.column_stack([np.ones_like(covariate), covariate])
    return np.asarray(patsy.dmatrix(f"cr(x, df={df}) - 1", {'x': covariate}))


def fit_f_dist(
    x: Sequence[float],
    df1: Sequence[float],
    covariate: Optional[Sequence[float]] = None
) -> Dict[str, Any]:
    """
    Moment estimation of the scaled F-distribution of residual variances.

    With a covariate (e.g. average log expression), the prior scale is
    a smooth function of it, estimated by a natural spline regression
    of the log variances.

    Args:
        x: Gene-wise residual variances
        df1: Residual degrees of freedom (scalar or per gene)
        covariate: Optional covariate for a trended prior

    Returns:
        Dictionary with 'scale' (prior variance, scalar or per gene) and
        'df2' (prior degrees of freedom)
    """
    x = np.asarray(x, dtype=np.float64)
    n = x.size
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), x.shape)

    if n == 0:
        return {'scale': np.nan, 'df2': np.nan}
    if n == 1:
        return {'scale': float(x[0]), 'df2': 0.0}

    ok = np.isfinite(df1) & (df1 > 1e-15) & np.isfinite(x) & (x > -1e-15)
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=np.float64)
        ok &= np.isfinite(covariate)
    nok = int(ok.sum())
    if nok <= 1:
        scale = float(x[ok][0]) if nok == 1 else np.nan
        return {'scale': scale, 'df2': 0.0 if nok == 1 else np.nan}

    xo = x[ok]
    d1 = df1[ok]

    xo = np.maximum(xo, 0)
    m = np.median(xo)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    elif np.any(xo == 0):
        logger.warning("Zero sample variances detected, have been offset away from zero")
    xo = np.maximum(xo, 1e-5 * m)

    z = np.log(xo)
    e = z + logmdigamma(d1 / 2)

    spline_df = 1
    if covariate is not None:
        spline_df = 1 + int(nok >= 3) + int(nok >= 6) + int(nok >= 30)
        spline_df = min(spline_df, len(np.unique(covariate[ok])))

    if spline_df < 2:
        emean = float(np.mean(e))
        evar = float(np.sum((e - emean) ** 2) / (nok - 1))
    else:
        basis = _spline_basis(covariate, spline_df)
        coef, _, rank, _ = np.linalg.lstsq(basis[ok], e, rcond=None)
        fitted = basis @ coef
        emean = fitted
        resid = e - fitted[ok]
        evar = float(np.sum(resid ** 2) / (nok - rank))

    evar = evar - float(np.mean(polygamma(1, d1 / 2)))
    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)
        scale = np.exp(emean - logmdigamma(df2 / 2))
    else:
        df2 = np.inf
        scale = float(np.mean(xo)) if spline_df < 2 else np.exp(emean)

    return {'scale': scale, 'df2': float(df2)}


def _posterior_var(var, df, var_prior, df_prior) -> np.ndarray:
    if np.isinf(df_prior):
        return np.broadcast_to(np.asarray(var_prior, dtype=np.float64), var.shape).copy()
    total = df + df_prior
    with np.errstate(invalid='ignore', divide='ignore'):
        post = (df * var + df_prior * var_prior) / total
    return np.where(total > 0, post, var)


def squeeze_var(
    var: Sequence[float],
    df: Sequence[float],
    covariate: Optional[Sequence[float]] = None
) -> Dict[str, Any]:
    """
    Shrink gene-wise variances towards a common (or trended) prior.

    Args:
        var: Gene-wise residual variances
        df: Residual degrees of freedom (scalar or per gene)
        covariate: Optional covariate for a trended prior

    Returns:
        Dictionary with 'var_post', 'var_prior' and 'df_prior'
    """
    var = np.asarray(var, dtype=np.float64)
    if var.size == 0:
        raise ValueError("var is empty")
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), var.shape)
    if var.size == 1:
        return {'var_post': var.copy(), 'var_prior': var.copy(), 'df_prior': 0.0}

    var = np.where(df == 0, 0.0, var)
    fit = fit_f_dist(var, df, covariate=covariate)
    df_prior = fit['df2']
    var_prior = fit['scale']
    if np.any(np.isnan(np.atleast_1d(df_prior))):
        raise ValueError("Could not estimate prior degrees of freedom")

    var_post = _posterior_var(var, df, var_prior, df_prior)
    return {'var_post': var_post, 'var_prior': var_prior, 'df_prior': df_prior}


def tmixture_vector(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float,
    v0_lim: Optional[Tuple[float, float]] = None
) -> float:
    """
    Estimate the prior variance of non-zero coefficients for one column.

    Uses the ``proportion`` of genes with the largest |t| and matches
    their observed tail probabilities to the mixture model.
    """
    ok = np.isfinite(tstat)
    tstat = np.abs(tstat[ok])
    stdev_unscaled = stdev_unscaled[ok]
    df = np.broadcast_to(df, ok.shape)[ok].astype(np.float64)

    n_genes = tstat.size
    n_target = int(np.ceil(proportion / 2 * n_genes))
    if n_target < 1:
        return np.nan

    p = max(n_target / n_genes, proportion)

    max_df = df.max()
    lower = df < max_df
    if lower.any():
        tail_p = stats.t.sf(tstat[lower], df[lower])
        tstat[lower] = stats.t.isf(tail_p, max_df)
        df[lower] = max_df

    order = np.argsort(-tstat, kind='stable')[:n_target]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2

    r = np.arange(1, n_target + 1)
    p0 = 2 * stats.t.sf(tstat, max_df)
    p_target = ((r - 0.5) / n_genes - (1 - p) * p0) / p
    v0 = np.zeros(n_target)
    pos = p_target > p0
    if pos.any():
        q_target = stats.t.isf(p_target[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / q_target) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


def _f_statistic(t: np.ndarray, cov_coefficients: np.ndarray, df_total: np.ndarray):
    sd = np.sqrt(np.diag(cov_coefficients))
    cor = cov_coefficients / np.outer(sd, sd)
    evals, evecs = np.linalg.eigh(cor)
    order = np.argsort(evals)[::-1]
    evals = evals[order]
    evecs = evecs[:, order]
    r = int(np.sum(evals / evals[0] > 1e-8))
    q = evecs[:, :r] / np.sqrt(evals[:r])[None, :] / np.sqrt(r)
    f_stat = np.sum((t @ q) ** 2, axis=1)
    return f_stat, stats.f.sf(f_stat, r, df_total), r


def ebayes(
    fit: FittedModel,
    proportion: float = 0.01,
    stdev_coef_lim: Tuple[float, float] = (0.1, 4.0),
    trend: bool = False
) -> FittedModel:
    """
    Empirical Bayes moderated statistics for every coefficient of a fit.

    Args:
        fit: Result of lm_fit() or contrasts_fit()
        proportion: Assumed proportion of differentially expressed genes
        stdev_coef_lim: Limits on the standard deviation of true log fold
            changes, used for the B-statistic prior
        trend: Let the prior variance depend on average expression

    Returns:
        The same FittedModel with moderated t, p-values, B and F filled in

    Raises:
        ValueError: If no gene has residual degrees of freedom
    """
    df_res = fit.df_residual.to_numpy(dtype=np.float64)
    sigma = fit.sigma.to_numpy(dtype=np.float64)
    if not np.any(np.isfinite(sigma) & (df_res > 0)):
        raise ValueError("No residual degrees of freedom in linear model fits")
    if not 0 < proportion < 1:
        raise ValueError("proportion must be between 0 and 1")

    covariate = fit.amean.to_numpy() if trend else None
    sq = squeeze_var(sigma ** 2, df_res, covariate=covariate)
    s2_prior = sq['var_prior']
    df_prior = float(sq['df_prior'])
    s2_post = sq['var_post']

    df_total = np.minimum(df_res + df_prior, np.nansum(df_res))

    coef = fit.coefficients.to_numpy()
    stdev = fit.stdev_unscaled.to_numpy()
    t = coef / stdev / np.sqrt(s2_post)[:, None]
    p_value = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    var_prior_lim = np.asarray(stdev_coef_lim, dtype=np.float64) ** 2 / np.median(s2_prior)
    var_prior = np.array([
        tmixture_vector(t[:, j], stdev[:, j], df_total, proportion, tuple(var_prior_lim))
        for j in range(t.shape[1])
    ])
    if np.any(np.isnan(var_prior)):
        var_prior[np.isnan(var_prior)] = 1.0 / np.median(s2_prior)
        logger.warning("Estimation of var.prior failed - set to default value")

    r = (stdev ** 2 + var_prior[None, :]) / stdev ** 2
    t2 = t ** 2
    if df_prior > 1e6:
        kernel = t2 * (1 - 1 / r) / 2
    else:
        dft = df_total[:, None]
        kernel = (1 + dft) / 2 * np.log((t2 + dft) / (t2 / r + dft))
    lods = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    f_stat, f_p, f_df1 = _f_statistic(t, fit.cov_coefficients.to_numpy(), df_total)

    genes = fit.genes
    names = fit.coef_names
    fit.s2_prior = s2_prior if np.ndim(s2_prior) == 0 else pd.Series(s2_prior, index=genes, name='s2_prior')
    fit.df_prior = df_prior
    fit.s2_post = pd.Series(s2_post, index=genes, name='s2_post')
    fit.df_total = pd.Series(df_total, index=genes, name='df_total')
    fit.t = pd.DataFrame(t, index=genes, columns=names)
    fit.p_value = pd.DataFrame(p_value, index=genes, columns=names)
    fit.lods = pd.DataFrame(lods, index=genes, columns=names)
    fit.var_prior = var_prior
    fit.F = pd.Series(f_stat, index=genes, name='F')
    fit.F_p_value = pd.Series(f_p, index=genes, name='F_p_value')
    fit.proportion = proportion
    fit.trend = trend

    prior_desc = f"{float(np.median(s2_prior)):.4g}" + (" (trended, median)" if trend else "")
    logger.info(f"eBayes: prior df {df_prior:.3g}, prior variance {prior_desc}, F on {f_df1} df")
    return fit
