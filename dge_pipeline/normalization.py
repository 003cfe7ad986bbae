"""
Normalization module for the DGE Pipeline.

This module estimates per-sample scaling factors (TMM, RLE, upper
quartile) so that library size and composition differences do not
confound between-sample comparisons, and computes counts per million.
"""

import logging
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy.stats import rankdata

logger = logging.getLogger(__name__)

NORM_METHODS = ('TMM', 'RLE', 'upperquartile', 'none')

ArrayLike = Union[pd.Series, np.ndarray, list]


def _as_lib_size(counts: pd.DataFrame, lib_size: Optional[ArrayLike]) -> np.ndarray:
    if lib_size is None:
        return counts.sum(axis=0).to_numpy(dtype=np.float64)
    lib_size = np.asarray(lib_size, dtype=np.float64)
    if lib_size.shape != (counts.shape[1],):
        raise ValueError("lib_size must have one entry per sample")
    return lib_size


def _calc_factor_quantile(data: np.ndarray, lib_size: np.ndarray, p: float = 0.75) -> np.ndarray:
    """Upper-quantile of each column divided by its library size."""
    f = np.quantile(data, p, axis=0)
    if f.min() == 0:
        logger.warning("One or more quantiles are zero")
    return f / lib_size


def _calc_factor_rle(data: np.ndarray) -> np.ndarray:
    """Median ratio of each column to the geometric-mean pseudo reference."""
    with np.errstate(divide='ignore'):
        gm = np.exp(np.mean(np.log(data), axis=1))
    positive = gm > 0
    return np.median(data[positive, :] / gm[positive, None], axis=0)


def _calc_factor_tmm(
    obs: np.ndarray,
    ref: np.ndarray,
    libsize_obs: float,
    libsize_ref: float,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10
) -> float:
    """
    Trimmed mean of M-values of one sample against the reference sample.

    M-values (log ratios) are trimmed by ``logratio_trim`` and A-values
    (average log expression) by ``sum_trim`` at both ends; the remaining
    M-values are averaged with inverse asymptotic-variance weights.
    """
    obs = obs.astype(np.float64)
    ref = ref.astype(np.float64)

    with np.errstate(divide='ignore', invalid='ignore'):
        log_r = np.log2((obs / libsize_obs) / (ref / libsize_ref))
        abs_e = (np.log2(obs / libsize_obs) + np.log2(ref / libsize_ref)) / 2
        v = (libsize_obs - obs) / libsize_obs / obs + (libsize_ref - ref) / libsize_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r = log_r[fin]
    abs_e = abs_e[fin]
    v = v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if do_weighting:
        f = np.nansum(log_r[keep] / v[keep]) / np.nansum(1 / v[keep])
    else:
        f = np.nanmean(log_r[keep]) if keep.any() else np.nan

    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def calc_norm_factors(
    counts: pd.DataFrame,
    lib_size: Optional[ArrayLike] = None,
    method: str = 'TMM',
    ref_column: Optional[Union[int, str]] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    p: float = 0.75
) -> pd.Series:
    """
    Calculate scaling factors that convert raw library sizes to effective ones.

    Args:
        counts: Count matrix (genes x samples)
        lib_size: Library sizes (default: column sums)
        method: 'TMM', 'RLE', 'upperquartile' or 'none'
        ref_column: Reference sample for TMM (name or position); by default
            the sample whose upper-quartile factor is closest to the mean
        logratio_trim: Fraction of M-values trimmed at each end (TMM)
        sum_trim: Fraction of A-values trimmed at each end (TMM)
        do_weighting: Use precision weights for the TMM mean
        a_cutoff: Minimum A-value for genes used by TMM
        p: Quantile used by the upper-quartile method

    Returns:
        Series of normalization factors (geometric mean 1), one per sample
    """
    if method not in NORM_METHODS:
        raise ValueError(f"Unknown normalization method '{method}'; choose from {NORM_METHODS}")

    samples = counts.columns
    x = counts.to_numpy(dtype=np.float64)
    lib = _as_lib_size(counts, lib_size)
    n_samples = x.shape[1]

    allzero = (x > 0).sum(axis=1) == 0
    if allzero.any():
        x = x[~allzero, :]

    if x.shape[0] == 0 or n_samples == 1:
        method = 'none'

    logger.info(f"Calculating {method} normalization factors for {n_samples} samples")

    if method == 'TMM':
        if ref_column is None:
            f75 = _calc_factor_quantile(x, lib, p=0.75)
            if np.median(f75) < 1e-20:
                ref_idx = int(np.argmax(np.sqrt(x).sum(axis=0)))
            else:
                ref_idx = int(np.argmin(np.abs(f75 - f75.mean())))
        elif isinstance(ref_column, str):
            ref_idx = list(samples).index(ref_column)
        else:
            ref_idx = int(ref_column)
        logger.debug(f"TMM reference sample: {samples[ref_idx]}")

        f = np.array([
            _calc_factor_tmm(
                x[:, i], x[:, ref_idx], lib[i], lib[ref_idx],
                logratio_trim=logratio_trim, sum_trim=sum_trim,
                do_weighting=do_weighting, a_cutoff=a_cutoff
            )
            for i in range(n_samples)
        ])
    elif method == 'RLE':
        f = _calc_factor_rle(x) / lib
    elif method == 'upperquartile':
        f = _calc_factor_quantile(x, lib, p=p)
    else:
        f = np.ones(n_samples)

    f = f / np.exp(np.mean(np.log(f)))

    factors = pd.Series(f, index=samples, name='norm_factors')
    logger.info(
        f"Normalization factors range {factors.min():.3f} - {factors.max():.3f}"
    )
    return factors


def effective_lib_size(
    counts: pd.DataFrame,
    norm_factors: Optional[ArrayLike] = None,
    lib_size: Optional[ArrayLike] = None
) -> pd.Series:
    """Library sizes multiplied by normalization factors."""
    lib = _as_lib_size(counts, lib_size)
    if norm_factors is not None:
        nf = np.asarray(norm_factors, dtype=np.float64)
        if nf.shape != lib.shape:
            raise ValueError("norm_factors must have one entry per sample")
        lib = lib * nf
    return pd.Series(lib, index=counts.columns, name='lib_size')


def cpm(
    counts: pd.DataFrame,
    norm_factors: Optional[ArrayLike] = None,
    lib_size: Optional[ArrayLike] = None,
    log: bool = False,
    prior_count: float = 2.0
) -> pd.DataFrame:
    """
    Counts per million, optionally on the log2 scale.

    For log values the prior count is scaled by each library's size
    relative to the mean library size, and twice the scaled prior is
    added to the library size, so that the log transform does not
    exaggerate differences between small and large libraries.

    Args:
        counts: Count matrix (genes x samples)
        norm_factors: Normalization factors (default: all 1)
        lib_size: Library sizes (default: column sums)
        log: Return log2-CPM
        prior_count: Average count added before taking logs

    Returns:
        DataFrame of (log2-)CPM values with the shape of counts
    """
    x = counts.to_numpy(dtype=np.float64)
    lib = effective_lib_size(counts, norm_factors, lib_size).to_numpy()

    if log:
        prior_scaled = lib / lib.mean() * prior_count
        lib_adj = lib + 2 * prior_scaled
        values = np.log2((x + prior_scaled[None, :]) / lib_adj[None, :] * 1e6)
    else:
        values = x / lib[None, :] * 1e6

    return pd.DataFrame(values, index=counts.index, columns=counts.columns)
