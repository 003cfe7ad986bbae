"""
Multiple testing correction for the DGE Pipeline.

P-values are adjusted once, across every gene tested for a coefficient,
before any sorting or thresholding is applied.
"""

import logging
from typing import Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .linear_model import FittedModel

logger = logging.getLogger(__name__)

ADJUST_METHODS = {
    'BH': 'fdr_bh',
    'fdr': 'fdr_bh',
    'BY': 'fdr_by',
    'holm': 'holm',
    'bonferroni': 'bonferroni',
    'none': None,
}


def p_adjust(
    p_values: Union[pd.Series, np.ndarray, list],
    method: str = 'BH'
) -> Union[pd.Series, np.ndarray]:
    """
    Adjust p-values for multiple comparisons.

    Args:
        p_values: Raw p-values; NaN entries are left as NaN and do not
            count towards the number of tests
        method: 'BH' (or 'fdr'), 'BY', 'holm', 'bonferroni' or 'none'

    Returns:
        Adjusted p-values of the same type and order as the input
    """
    if method not in ADJUST_METHODS:
        raise ValueError(f"Unknown adjustment method '{method}'; choose from {list(ADJUST_METHODS)}")

    index = p_values.index if isinstance(p_values, pd.Series) else None
    p = np.asarray(p_values, dtype=np.float64)
    adjusted = p.copy()

    sm_method = ADJUST_METHODS[method]
    ok = np.isfinite(p)
    if sm_method is not None and ok.any():
        _, adjusted[ok], _, _ = multipletests(p[ok], method=sm_method)

    if index is not None:
        return pd.Series(adjusted, index=index, name='adj.P.Val')
    return adjusted


def decide_tests(
    fit: FittedModel,
    method: str = 'separate',
    adjust_method: str = 'BH',
    p_value: float = 0.05,
    lfc: float = 0.0
) -> pd.DataFrame:
    """
    Classify each gene as down (-1), not significant (0) or up (1).

    Args:
        fit: Moderated fit from ebayes()
        method: 'separate' adjusts each coefficient on its own, 'global'
            adjusts all coefficients' p-values together
        adjust_method: Multiple testing method (see p_adjust)
        p_value: Adjusted p-value cutoff
        lfc: Minimum absolute log2 fold change

    Returns:
        DataFrame (genes x coefficients) of -1/0/1
    """
    if not fit.is_moderated:
        raise ValueError("Run ebayes() on the fit before decide_tests()")

    p = fit.p_value.to_numpy()
    if method == 'separate':
        adj = np.column_stack([p_adjust(p[:, j], adjust_method) for j in range(p.shape[1])])
    elif method == 'global':
        adj = p_adjust(p.ravel(), adjust_method).reshape(p.shape)
    else:
        raise ValueError(f"Unknown method '{method}'; use 'separate' or 'global'")

    coef = fit.coefficients.to_numpy()
    significant = (adj <= p_value) & (np.abs(coef) >= lfc)
    calls = (np.sign(coef) * significant).astype(int)
    return pd.DataFrame(calls, index=fit.genes, columns=fit.coef_names)


def summarize_tests(calls: pd.DataFrame) -> pd.DataFrame:
    """Count Down/NotSig/Up genes per coefficient."""
    summary = pd.DataFrame({
        col: {
            'Down': int((calls[col] == -1).sum()),
            'NotSig': int((calls[col] == 0).sum()),
            'Up': int((calls[col] == 1).sum()),
        }
        for col in calls.columns
    })
    return summary.loc[['Down', 'NotSig', 'Up']]
