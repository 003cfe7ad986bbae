"""
Expression filtering module for the DGE Pipeline.

Genes with too few reads to be informative are removed before any
model is fitted. The default rule keeps a gene when it is expressed
above a CPM threshold in at least as many samples as the smallest
experimental group, and its total count is not negligible.
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from .normalization import cpm, effective_lib_size

logger = logging.getLogger(__name__)

_TOL = 1e-14


def hat_values(design: Union[pd.DataFrame, np.ndarray]) -> np.ndarray:
    """Leverages (diagonal of the hat matrix) of a design matrix."""
    x = np.asarray(design, dtype=np.float64)
    q, _ = np.linalg.qr(x)
    return np.sum(q * q, axis=1)


def min_group_size(
    n_samples: int,
    design: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    group: Optional[Sequence] = None
) -> float:
    """
    Smallest number of samples that a gene must be expressed in.

    With a grouping factor this is the size of the smallest group; with a
    design matrix it is the inverse of the largest leverage, which equals
    the smallest group size for one-way layouts.
    """
    if group is not None:
        sizes = pd.Series(list(group)).value_counts()
        return float(sizes[sizes > 0].min())
    if design is not None:
        return float(1.0 / np.max(hat_values(design)))
    logger.info("No group or design set. Assuming all samples belong to one group.")
    return float(n_samples)


def filter_by_expr(
    counts: pd.DataFrame,
    design: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    group: Optional[Sequence] = None,
    lib_size: Optional[Sequence[float]] = None,
    norm_factors: Optional[Sequence[float]] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7
) -> pd.Series:
    """
    Determine which genes have sufficiently large counts to be kept.

    Args:
        counts: Count matrix (genes x samples)
        design: Design matrix used to derive the minimum group size
        group: Group labels, one per sample (takes precedence over design)
        lib_size: Library sizes (default: column sums)
        norm_factors: Normalization factors applied to library sizes
        min_count: Minimum count required in the median-sized library
        min_total_count: Minimum total count across all samples
        large_n: Number of samples per group considered large
        min_prop: Minimum proportion of samples in the smallest group that
            must express the gene once that group is larger than large_n

    Returns:
        Boolean Series indexed by gene, True for genes to keep
    """
    lib = effective_lib_size(counts, norm_factors, lib_size)

    min_samples = min_group_size(counts.shape[1], design=design, group=group)
    if min_samples > large_n:
        min_samples = large_n + (min_samples - large_n) * min_prop

    cpm_cutoff = min_count / np.median(lib) * 1e6
    expressed = cpm(counts, lib_size=lib)
    keep_cpm = (expressed.to_numpy() >= cpm_cutoff).sum(axis=1) >= min_samples - _TOL
    keep_total = counts.to_numpy(dtype=np.float64).sum(axis=1) >= min_total_count - _TOL

    keep = pd.Series(keep_cpm & keep_total, index=counts.index, name='keep')
    logger.info(
        f"filter_by_expr: CPM cutoff {cpm_cutoff:.3f} in >= {min_samples:.2f} samples; "
        f"keeping {int(keep.sum())}/{len(keep)} genes"
    )
    return keep


def filter_by_max_cpm(
    counts: pd.DataFrame,
    cutoff: float = 1.0,
    norm_factors: Optional[Sequence[float]] = None
) -> pd.Series:
    """
    Keep genes whose largest CPM value across samples reaches a cutoff.

    Args:
        counts: Count matrix (genes x samples)
        cutoff: Minimum of the per-gene maximum CPM
        norm_factors: Normalization factors applied to library sizes

    Returns:
        Boolean Series indexed by gene, True for genes to keep
    """
    max_cpm = cpm(counts, norm_factors=norm_factors).max(axis=1)
    keep = (max_cpm >= cutoff).rename('keep')
    logger.info(f"max-CPM filter (cutoff {cutoff}): keeping {int(keep.sum())}/{len(keep)} genes")
    return keep


def apply_filter(counts: pd.DataFrame, keep: pd.Series) -> pd.DataFrame:
    """
    Subset a count matrix to the kept genes.

    Args:
        counts: Count matrix (genes x samples)
        keep: Boolean Series indexed by gene

    Returns:
        Count matrix restricted to kept genes, original order preserved
    """
    if not keep.index.equals(counts.index):
        keep = keep.reindex(counts.index, fill_value=False)
    filtered = counts.loc[keep.to_numpy(dtype=bool)]
    logger.info(f"Removed {counts.shape[0] - filtered.shape[0]} lowly expressed genes")
    return filtered
