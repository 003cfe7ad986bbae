"""
Result tables for the DGE Pipeline.

This module extracts ranked tables of genes from a moderated fit: the
per-coefficient table (log fold change, average expression, moderated t,
raw and adjusted p-values, B-statistic) and the F-test table across
several coefficients, with optional gene annotation columns appended.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats

from .ebayes import ebayes
from .linear_model import FittedModel, subset_coefficients
from .loader import write_table
from .multiple_testing import p_adjust

logger = logging.getLogger(__name__)

SORT_ALIASES = {
    'logFC': 'logFC', 'M': 'logFC',
    'AveExpr': 'AveExpr', 'A': 'AveExpr', 'Amean': 'AveExpr',
    'P': 'P', 'p': 'P',
    't': 't', 'T': 't',
    'B': 'B',
    'F': 'F',
    'none': 'none',
}

Coef = Union[int, str]


def _require_moderated(fit: FittedModel) -> None:
    if not fit.is_moderated:
        raise ValueError("Run ebayes() on the fit before extracting a top table")


def _take(table: pd.DataFrame, order: np.ndarray, keep: np.ndarray, number: Optional[int]) -> pd.DataFrame:
    order = order[keep[order]]
    if number is not None and np.isfinite(number):
        order = order[:int(number)]
    return table.iloc[order]


def _add_annotation(table: pd.DataFrame, annotation: Optional[pd.DataFrame]) -> pd.DataFrame:
    if annotation is None:
        return table
    overlap = [c for c in annotation.columns if c in table.columns]
    annot = annotation.drop(columns=overlap) if overlap else annotation
    return table.join(annot, how='left')


def top_table(
    fit: FittedModel,
    coef: Optional[Union[Coef, Sequence[Coef]]] = None,
    number: Optional[int] = 10,
    sort_by: str = 'B',
    adjust_method: str = 'BH',
    p_value: float = 1.0,
    lfc: float = 0.0,
    confint: Union[bool, float] = False,
    annotation: Optional[pd.DataFrame] = None
) -> pd.DataFrame:
    """
    Table of the top-ranked genes for one coefficient or contrast.

    P-values are adjusted across all genes in the fit before sorting and
    before the ``p_value``/``lfc`` thresholds select rows.

    Args:
        fit: Moderated fit from ebayes()
        coef: Coefficient name or position; several coefficients (or None
            with a multi-coefficient fit) give an F-test table instead
        number: Maximum number of genes to return (None for all)
        sort_by: 'B', 'P', 't', 'logFC', 'AveExpr' or 'none'
        adjust_method: Multiple testing method (see p_adjust)
        p_value: Adjusted p-value cutoff for returned genes
        lfc: Minimum absolute log2 fold change for returned genes
        confint: Add CI.L/CI.R columns; a float gives the confidence level
        annotation: Gene annotation joined onto the table by gene ID

    Returns:
        DataFrame indexed by gene ID
    """
    _require_moderated(fit)

    if coef is None:
        if len(fit.coef_names) == 1:
            coef = 0
        else:
            coefs = [c for c in fit.coef_names if c != 'Intercept']
            if len(coefs) < len(fit.coef_names):
                logger.info("Removing intercept from test coefficients")
            if len(coefs) == 1:
                coef = coefs[0]
            else:
                return top_table_f(fit, coefs, number=number, sort_by=sort_by if sort_by in ('F', 'none') else 'F',
                                   adjust_method=adjust_method, p_value=p_value, lfc=lfc, annotation=annotation)

    if isinstance(coef, (list, tuple)):
        if len(coef) > 1:
            return top_table_f(fit, list(coef), number=number, sort_by=sort_by if sort_by in ('F', 'none') else 'F',
                               adjust_method=adjust_method, p_value=p_value, lfc=lfc, annotation=annotation)
        coef = coef[0]

    key = SORT_ALIASES.get(sort_by)
    if key is None or key == 'F':
        raise ValueError(f"Invalid sort_by '{sort_by}' for a single coefficient")

    name = fit.resolve_coef(coef)
    m = fit.coefficients[name]
    t = fit.t[name]
    p = fit.p_value[name]
    adj = p_adjust(p, adjust_method)

    columns = {'logFC': m}
    if confint:
        level = 0.95 if confint is True else float(confint)
        margin = (
            stats.t.isf((1 - level) / 2, fit.df_total)
            * fit.stdev_unscaled[name] * np.sqrt(fit.s2_post)
        )
        columns['CI.L'] = m - margin
        columns['CI.R'] = m + margin
    columns.update({
        'AveExpr': fit.amean,
        't': t,
        'P.Value': p,
        'adj.P.Val': adj,
        'B': fit.lods[name],
    })
    table = pd.DataFrame(columns, index=fit.genes)
    table.index.name = 'gene_id'

    if key == 'logFC':
        order = np.argsort(-np.abs(m.to_numpy()), kind='stable')
    elif key == 'AveExpr':
        order = np.argsort(-fit.amean.to_numpy(), kind='stable')
    elif key == 'P':
        order = np.argsort(p.to_numpy(), kind='stable')
    elif key == 't':
        order = np.argsort(-np.abs(t.to_numpy()), kind='stable')
    elif key == 'B':
        order = np.argsort(-fit.lods[name].to_numpy(), kind='stable')
    else:
        order = np.arange(len(table))

    keep = np.ones(len(table), dtype=bool)
    if p_value < 1 or lfc > 0:
        keep = (adj.to_numpy() <= p_value) & (np.abs(m.to_numpy()) >= lfc)

    result = _take(table, order, keep, number)
    logger.debug(f"top_table '{name}': {len(result)} genes returned")
    return _add_annotation(result, annotation)


def top_table_f(
    fit: FittedModel,
    coefs: Optional[Sequence[Coef]] = None,
    number: Optional[int] = 10,
    sort_by: str = 'F',
    adjust_method: str = 'BH',
    p_value: float = 1.0,
    lfc: float = 0.0,
    annotation: Optional[pd.DataFrame] = None
) -> pd.DataFrame:
    """
    Table of top genes ranked by the moderated F-test over several coefficients.

    When only some of the fit's coefficients are requested, the fit is
    restricted to them and moderated again so that the F-statistic tests
    exactly those coefficients.

    Args:
        fit: Moderated fit from ebayes()
        coefs: Coefficients to test jointly (default: all)
        number: Maximum number of genes to return (None for all)
        sort_by: 'F' or 'none'
        adjust_method: Multiple testing method (see p_adjust)
        p_value: Adjusted p-value cutoff for returned genes
        lfc: Genes must reach this absolute log2 fold change in at least
            one coefficient
        annotation: Gene annotation joined onto the table by gene ID

    Returns:
        DataFrame indexed by gene ID with one column per coefficient and
        AveExpr, F, P.Value, adj.P.Val
    """
    _require_moderated(fit)
    if sort_by not in ('F', 'none'):
        raise ValueError("sort_by must be 'F' or 'none' for an F-test table")

    names: List[str] = fit.coef_names if coefs is None else [fit.resolve_coef(c) for c in coefs]
    names = list(dict.fromkeys(names))
    if len(names) < len(fit.coef_names):
        fit = ebayes(subset_coefficients(fit, names), proportion=fit.proportion, trend=fit.trend)

    coef_values = fit.coefficients[names]
    adj = p_adjust(fit.F_p_value, adjust_method)

    table = coef_values.copy()
    table['AveExpr'] = fit.amean
    table['F'] = fit.F
    table['P.Value'] = fit.F_p_value
    table['adj.P.Val'] = adj
    table.index.name = 'gene_id'

    if sort_by == 'F':
        order = np.argsort(-fit.F.to_numpy(), kind='stable')
    else:
        order = np.arange(len(table))

    keep = np.ones(len(table), dtype=bool)
    if p_value < 1 or lfc > 0:
        big = (np.abs(coef_values.to_numpy()) >= lfc).any(axis=1)
        keep = (adj.to_numpy() <= p_value) & big

    result = _take(table, order, keep, number)
    return _add_annotation(result, annotation)


def write_top_table(table: pd.DataFrame, output_file: Union[str, Path]) -> Path:
    """Write a top table as TSV with the gene identifier as first column."""
    return write_table(table, output_file, index_label='gene_id')


def write_normalized_expression(expression: pd.DataFrame, output_file: Union[str, Path]) -> Path:
    """Write a (log-)normalized expression matrix as TSV."""
    return write_table(expression, output_file, index_label='gene_id')
